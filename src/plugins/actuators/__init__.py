"""
Actuator plugins package.

Actuators adapt one ManagedObject kind to the cloud API that owns it.
"""

from plugins.actuators.base import ActuatorContext, ResourceActuator

__all__ = ["ActuatorContext", "ResourceActuator"]
