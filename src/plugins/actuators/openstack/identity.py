"""
Identity API actuator: Project.
"""

from typing import Any, Dict

from plugins.actuators.base import ActuatorContext
from plugins.actuators.openstack.base import OpenStackActuator


class ProjectActuator(OpenStackActuator):
    """Manages keystone projects."""

    service = "identity"
    collection = "projects"
    resource_key = "project"
    tag_resource_type = "projects"
    mutable_fields = ["description", "enabled"]
    relations = []

    @property
    def kind(self) -> str:
        return "Project"

    def create_fields(self, ctx: ActuatorContext) -> Dict[str, Any]:
        resource = ctx.resource
        return {
            "name": self.resource_name(ctx),
            "description": resource.get("description"),
            "enabled": resource.get("enabled"),
            "domain_id": resource.get("domain_id"),
        }

    def adopt_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        return {
            "name": self.resource_name(ctx),
            "domain_id": ctx.resource.get("domain_id"),
        }

    def import_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        flt = ctx.import_filter
        return {
            "name": flt.get("name"),
            "domain_id": flt.get("domain_id"),
            "tags": self.tag_filters(flt.get("tags")),
        }

    def observed_status(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": observed.get("name"),
            "description": observed.get("description"),
            "enabled": observed.get("enabled"),
            "domain_id": observed.get("domain_id"),
            "tags": sorted(observed.get("tags") or []),
        }
