"""
Networking API actuators: Network, Subnet, SecurityGroup and Port.
"""

from typing import Any, Dict, List

from dependency import DeletionGuardRelation, DependencyRelation
from plugins.actuators.base import ActuatorContext
from plugins.actuators.openstack.base import (
    OpenStackActuator,
    guard_finalizer,
    import_ref,
    resource_ref,
    resource_refs,
)

PROJECT = "Project"
NETWORK = "Network"
SUBNET = "Subnet"
SECURITY_GROUP = "SecurityGroup"
PORT = "Port"

RESOURCE_PROJECT_REF = "spec.resource.projectRef"
IMPORT_PROJECT_REF = "spec.import.filter.projectRef"
RESOURCE_NETWORK_REF = "spec.resource.networkRef"
IMPORT_NETWORK_REF = "spec.import.filter.networkRef"
RESOURCE_SUBNET_REFS = "spec.resource.addresses.subnetRef"
RESOURCE_SECURITY_GROUP_REFS = "spec.resource.securityGroupRefs"


def _project_relations(kind: str) -> List[DependencyRelation]:
    return [
        DeletionGuardRelation(
            kind,
            PROJECT,
            RESOURCE_PROJECT_REF,
            resource_ref("projectRef"),
            finalizer=guard_finalizer(kind),
            owner=f"{kind.lower()}/projectRef",
        ),
        DependencyRelation(
            kind, PROJECT, IMPORT_PROJECT_REF, import_ref("projectRef")
        ),
    ]


def _subnet_refs(obj) -> List[str]:
    addresses = (obj.resource or {}).get("addresses") or []
    return [address.get("subnetRef") for address in addresses]


class NetworkActuator(OpenStackActuator):
    """Manages neutron networks."""

    collection = "networks"
    resource_key = "network"
    tag_resource_type = "networks"
    mutable_fields = ["name", "description", "admin_state_up", "mtu"]
    available_statuses = ["ACTIVE"]
    relations = _project_relations(NETWORK)

    @property
    def kind(self) -> str:
        return NETWORK

    def create_fields(self, ctx: ActuatorContext) -> Dict[str, Any]:
        resource = ctx.resource
        return {
            "name": self.resource_name(ctx),
            "description": resource.get("description"),
            "admin_state_up": resource.get("admin_state_up"),
            "mtu": resource.get("mtu"),
            "port_security_enabled": resource.get("port_security_enabled"),
            "shared": resource.get("shared"),
            "project_id": ctx.dependency_id(RESOURCE_PROJECT_REF),
        }

    def adopt_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        return {
            "name": self.resource_name(ctx),
            "project_id": ctx.dependency_id(RESOURCE_PROJECT_REF),
        }

    def import_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        flt = ctx.import_filter
        return {
            "name": flt.get("name"),
            "description": flt.get("description"),
            "project_id": ctx.dependency_id(IMPORT_PROJECT_REF),
            "tags": self.tag_filters(flt.get("tags")),
        }

    def observed_status(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": observed.get("name"),
            "description": observed.get("description"),
            "status": observed.get("status"),
            "admin_state_up": observed.get("admin_state_up"),
            "mtu": observed.get("mtu"),
            "project_id": observed.get("project_id"),
            "tags": sorted(observed.get("tags") or []),
        }


class SubnetActuator(OpenStackActuator):
    """Manages neutron subnets."""

    collection = "subnets"
    resource_key = "subnet"
    tag_resource_type = "subnets"
    mutable_fields = ["name", "description", "gateway_ip", "enable_dhcp"]
    relations = [
        DeletionGuardRelation(
            SUBNET,
            NETWORK,
            RESOURCE_NETWORK_REF,
            resource_ref("networkRef"),
            finalizer=guard_finalizer(SUBNET),
            owner="subnet/networkRef",
        ),
        DependencyRelation(
            SUBNET, NETWORK, IMPORT_NETWORK_REF, import_ref("networkRef")
        ),
    ] + _project_relations(SUBNET)

    @property
    def kind(self) -> str:
        return SUBNET

    def create_fields(self, ctx: ActuatorContext) -> Dict[str, Any]:
        resource = ctx.resource
        return {
            "name": self.resource_name(ctx),
            "description": resource.get("description"),
            "network_id": ctx.dependency_id(RESOURCE_NETWORK_REF),
            "cidr": resource.get("cidr"),
            "ip_version": resource.get("ip_version", 4),
            "gateway_ip": resource.get("gateway_ip"),
            "enable_dhcp": resource.get("enable_dhcp"),
            "dns_nameservers": resource.get("dns_nameservers"),
            "project_id": ctx.dependency_id(RESOURCE_PROJECT_REF),
        }

    def adopt_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        return {
            "name": self.resource_name(ctx),
            "network_id": ctx.dependency_id(RESOURCE_NETWORK_REF),
        }

    def import_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        flt = ctx.import_filter
        return {
            "name": flt.get("name"),
            "cidr": flt.get("cidr"),
            "network_id": ctx.dependency_id(IMPORT_NETWORK_REF),
            "project_id": ctx.dependency_id(IMPORT_PROJECT_REF),
            "tags": self.tag_filters(flt.get("tags")),
        }

    def observed_status(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": observed.get("name"),
            "network_id": observed.get("network_id"),
            "cidr": observed.get("cidr"),
            "ip_version": observed.get("ip_version"),
            "gateway_ip": observed.get("gateway_ip"),
            "enable_dhcp": observed.get("enable_dhcp"),
            "tags": sorted(observed.get("tags") or []),
        }


class SecurityGroupActuator(OpenStackActuator):
    """Manages neutron security groups. Rules are left to the group's defaults."""

    collection = "security-groups"
    resource_key = "security_group"
    tag_resource_type = "security-groups"
    mutable_fields = ["name", "description"]
    relations = _project_relations(SECURITY_GROUP)

    @property
    def kind(self) -> str:
        return SECURITY_GROUP

    def create_fields(self, ctx: ActuatorContext) -> Dict[str, Any]:
        resource = ctx.resource
        return {
            "name": self.resource_name(ctx),
            "description": resource.get("description"),
            "stateful": resource.get("stateful"),
            "project_id": ctx.dependency_id(RESOURCE_PROJECT_REF),
        }

    def import_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        flt = ctx.import_filter
        return {
            "name": flt.get("name"),
            "project_id": ctx.dependency_id(IMPORT_PROJECT_REF),
            "tags": self.tag_filters(flt.get("tags")),
        }

    def observed_status(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": observed.get("name"),
            "description": observed.get("description"),
            "stateful": observed.get("stateful"),
            "project_id": observed.get("project_id"),
            "tags": sorted(observed.get("tags") or []),
        }


class PortActuator(OpenStackActuator):
    """
    Manages neutron ports.

    A port guards its network, the subnets of its fixed addresses, its
    security groups and its project, so none of them can be deleted while
    the port still uses them. Import filters may reference a network and
    a project without guarding them.
    """

    collection = "ports"
    resource_key = "port"
    tag_resource_type = "ports"
    mutable_fields = ["name", "description", "admin_state_up"]
    available_statuses = ["ACTIVE", "DOWN"]
    relations = [
        DeletionGuardRelation(
            PORT,
            NETWORK,
            RESOURCE_NETWORK_REF,
            resource_ref("networkRef"),
            finalizer=guard_finalizer(PORT),
            owner="port/networkRef",
        ),
        DeletionGuardRelation(
            PORT,
            SUBNET,
            RESOURCE_SUBNET_REFS,
            _subnet_refs,
            finalizer=guard_finalizer(PORT),
            owner="port/subnetRef",
        ),
        DeletionGuardRelation(
            PORT,
            SECURITY_GROUP,
            RESOURCE_SECURITY_GROUP_REFS,
            resource_refs("securityGroupRefs"),
            finalizer=guard_finalizer(PORT),
            owner="port/securityGroupRefs",
        ),
        DependencyRelation(PORT, NETWORK, IMPORT_NETWORK_REF, import_ref("networkRef")),
    ] + _project_relations(PORT)

    @property
    def kind(self) -> str:
        return PORT

    def _fixed_ips(self, ctx: ActuatorContext) -> List[Dict[str, Any]]:
        subnet_ids = ctx.dependency_ids(RESOURCE_SUBNET_REFS)
        fixed_ips = []
        for address in ctx.resource.get("addresses") or []:
            fixed_ip = {"subnet_id": subnet_ids.get(address.get("subnetRef"))}
            if address.get("ip"):
                fixed_ip["ip_address"] = address["ip"]
            fixed_ips.append(fixed_ip)
        return fixed_ips

    def _security_group_ids(self, ctx: ActuatorContext) -> List[str]:
        ids = ctx.dependency_ids(RESOURCE_SECURITY_GROUP_REFS)
        return sorted(ids.values())

    def create_fields(self, ctx: ActuatorContext) -> Dict[str, Any]:
        resource = ctx.resource
        fields = {
            "name": self.resource_name(ctx),
            "description": resource.get("description"),
            "network_id": ctx.dependency_id(RESOURCE_NETWORK_REF),
            "admin_state_up": resource.get("admin_state_up"),
            "mac_address": resource.get("mac_address"),
            "project_id": ctx.dependency_id(RESOURCE_PROJECT_REF),
        }
        if resource.get("addresses"):
            fields["fixed_ips"] = self._fixed_ips(ctx)
        if "securityGroupRefs" in resource:
            fields["security_groups"] = self._security_group_ids(ctx)
        return fields

    def adopt_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        return {
            "name": self.resource_name(ctx),
            "network_id": ctx.dependency_id(RESOURCE_NETWORK_REF),
        }

    def import_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        flt = ctx.import_filter
        return {
            "name": flt.get("name"),
            "description": flt.get("description"),
            "network_id": ctx.dependency_id(IMPORT_NETWORK_REF),
            "project_id": ctx.dependency_id(IMPORT_PROJECT_REF),
            "tags": self.tag_filters(flt.get("tags")),
        }

    def field_changes(
        self, ctx: ActuatorContext, observed: Dict[str, Any]
    ) -> Dict[str, Any]:
        changes = super().field_changes(ctx, observed)
        if "securityGroupRefs" in ctx.resource:
            desired = self._security_group_ids(ctx)
            if set(desired) != set(observed.get("security_groups") or []):
                changes["security_groups"] = desired
        return changes

    def observed_status(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": observed.get("name"),
            "status": observed.get("status"),
            "network_id": observed.get("network_id"),
            "mac_address": observed.get("mac_address"),
            "fixed_ips": observed.get("fixed_ips") or [],
            "security_groups": sorted(observed.get("security_groups") or []),
            "tags": sorted(observed.get("tags") or []),
        }
