"""
Shared behaviour for actuators backed by an OpenStack REST collection.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from objects import controller_finalizer
from plugins.actuators.base import ActuatorContext, ResourceActuator
from plugins.actuators.openstack.client import OpenStackClient
from progress import ProgressStatus, TerminalError
from tags import join_tags, tag_reconciler

logger = logging.getLogger(__name__)


def resource_ref(field: str):
    """Extractor for a single named reference in ``spec.resource``."""

    def extract(obj) -> List[str]:
        value = (obj.resource or {}).get(field)
        return [value] if value else []

    return extract


def resource_refs(field: str):
    """Extractor for a list of named references in ``spec.resource``."""

    def extract(obj) -> List[str]:
        return list((obj.resource or {}).get(field) or [])

    return extract


def import_ref(field: str):
    """Extractor for a named reference in ``spec.import.filter``."""

    def extract(obj) -> List[str]:
        value = (obj.import_filter or {}).get(field)
        return [value] if value else []

    return extract


def guard_finalizer(kind: str) -> str:
    """Guard token placed on Targets by the controller of ``kind``."""
    return controller_finalizer(kind.lower())


class OpenStackActuator(ResourceActuator):
    """
    Actuator over one OpenStack collection.

    Subclasses set the collection and fill in :meth:`create_fields`,
    :meth:`adopt_filters` and :meth:`import_filters`.
    """

    service = "network"
    collection = ""
    resource_key = ""
    # Resource type segment of the tags endpoint; empty disables tags
    tag_resource_type = ""
    # Scalar fields copied from spec.resource that can change in place
    mutable_fields: List[str] = ["description"]
    available_statuses: Optional[List[str]] = None

    def __init__(self):
        self.client: Optional[OpenStackClient] = None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load OpenStack endpoint configuration from environment variables."""
        return {
            "network_endpoint": os.getenv(
                "OS_NETWORK_ENDPOINT", "http://localhost:9696/v2.0"
            ),
            "identity_endpoint": os.getenv(
                "OS_IDENTITY_ENDPOINT", "http://localhost:5000/v3"
            ),
            "auth_token": os.getenv("OS_AUTH_TOKEN", ""),
            "request_timeout": int(os.getenv("OS_REQUEST_TIMEOUT", "30")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        defaults = self.load_config_from_env()
        defaults.update(config or {})
        endpoint = defaults[f"{self.service}_endpoint"]
        if not defaults.get("auth_token"):
            logger.warning(
                f"{self.kind} actuator has no auth token. Set OS_AUTH_TOKEN."
            )
        self.client = OpenStackClient(
            endpoint,
            token=defaults.get("auth_token"),
            timeout=defaults.get("request_timeout", 30),
        )
        logger.debug(f"{self.kind} actuator initialized: endpoint={endpoint}")

    # Hooks

    def create_fields(self, ctx: ActuatorContext) -> Dict[str, Any]:
        raise NotImplementedError

    def adopt_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        """Filters identifying a resource this object may already have created."""
        return {"name": self.resource_name(ctx)}

    def import_filters(self, ctx: ActuatorContext) -> Dict[str, Any]:
        raise NotImplementedError

    def resource_name(self, ctx: ActuatorContext) -> str:
        return ctx.resource.get("name") or ctx.obj.name

    # ResourceActuator

    async def get_by_id(
        self, ctx: ActuatorContext, resource_id: str
    ) -> Optional[Dict[str, Any]]:
        return await self.client.get(self.collection, self.resource_key, resource_id)

    async def find(self, ctx: ActuatorContext) -> Optional[Dict[str, Any]]:
        if ctx.obj.resource is not None:
            filters = self.adopt_filters(ctx)
        else:
            filters = self.import_filters(ctx)

        results = await self.client.list(self.collection, filters)
        if len(results) > 1:
            raise TerminalError(
                f"Found {len(results)} {self.kind} resources matching {filters}"
            )
        return results[0] if results else None

    async def create(self, ctx: ActuatorContext) -> Dict[str, Any]:
        fields = {
            k: v for k, v in self.create_fields(ctx).items() if v is not None
        }
        return await self.client.create(self.collection, self.resource_key, fields)

    async def delete(self, ctx: ActuatorContext, resource_id: str) -> None:
        await self.client.delete(self.collection, resource_id)

    async def update(
        self, ctx: ActuatorContext, observed: Dict[str, Any]
    ) -> List[ProgressStatus]:
        statuses = []
        resource_id = self.resource_id(observed)

        changes = self.field_changes(ctx, observed)
        if changes:
            fields = ", ".join(sorted(changes))
            logger.info(f"Updating {self.kind} {resource_id} fields: {fields}")
            await self.client.update(
                self.collection, self.resource_key, resource_id, changes
            )
            statuses.append(ProgressStatus.needs_refresh())

        if self.tag_resource_type and "tags" in ctx.resource:
            reconcile = tag_reconciler(
                self.client, self.tag_resource_type, resource_id
            )
            statuses.append(
                await reconcile(ctx.resource["tags"], observed.get("tags"))
            )
        return statuses

    def field_changes(
        self, ctx: ActuatorContext, observed: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Mutable fields whose desired value differs from the observed one."""
        changes = {}
        for field in self.mutable_fields:
            desired = ctx.resource.get(field)
            if desired is not None and desired != observed.get(field):
                changes[field] = desired
        return changes

    def is_available(self, observed: Dict[str, Any]) -> bool:
        if self.available_statuses is None:
            return True
        return observed.get("status") in self.available_statuses

    def tag_filters(self, tags: Optional[List[str]]) -> Optional[str]:
        return join_tags(tags) if tags else None
