"""
OpenStack actuators shipped with the controller.
"""

from plugins.actuators.openstack.client import OpenStackClient
from plugins.actuators.openstack.identity import ProjectActuator
from plugins.actuators.openstack.networking import (
    NetworkActuator,
    PortActuator,
    SecurityGroupActuator,
    SubnetActuator,
)

BUILTIN_ACTUATORS = [
    ProjectActuator,
    NetworkActuator,
    SubnetActuator,
    SecurityGroupActuator,
    PortActuator,
]

__all__ = [
    "BUILTIN_ACTUATORS",
    "NetworkActuator",
    "OpenStackClient",
    "PortActuator",
    "ProjectActuator",
    "SecurityGroupActuator",
    "SubnetActuator",
]
