"""
Input plugins package.

Input plugins accept authored managed objects and write them to the store.
"""

from plugins.inputs.base import InputPlugin, ObjectCallback

__all__ = ["InputPlugin", "ObjectCallback"]
