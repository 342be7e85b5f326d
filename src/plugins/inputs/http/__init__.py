"""
HTTP Input Plugin.

This plugin provides a REST API for resource management.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
