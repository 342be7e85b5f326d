"""
Plugin system for the reconcile controller.

This package provides the plugin architecture for resource actuators and
input sources.
"""

from plugins.actuators.base import ActuatorContext, ResourceActuator
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ActuatorContext",
    "ResourceActuator",
    "PluginRegistry",
    "get_registry",
]
