"""
HTTP Input Plugin - REST API for authoring managed objects.

This plugin provides a FastAPI-based REST API for creating, updating and
deleting managed objects, and a Server-Sent Events stream of the store's
change feed.
"""

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from events import EventBus, WatchEvent
from objects import ManagedObject, ObjectKey
from plugins.inputs.base import InputPlugin, ObjectCallback, validate_kind
from store import (
    BookmarkExpired,
    ObjectAlreadyExists,
    ObjectDeleting,
    ObjectNotFound,
    ObjectStore,
    VersionConflict,
)

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 256 * 1024  # 256KB max for spec


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_spec(value: Dict[str, Any]) -> Dict[str, Any]:
    """Validate spec size and that exactly one of resource/import is set."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"spec exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB")

    variants = [key for key in ("resource", "import") if value.get(key) is not None]
    if len(variants) != 1:
        raise ValueError("spec must set exactly one of 'resource' or 'import'")

    import_spec = value.get("import")
    if import_spec is not None and not (
        import_spec.get("id") or import_spec.get("filter")
    ):
        raise ValueError("spec.import must set 'id' or 'filter'")
    return value


# Managed object models


class ObjectCreate(BaseModel):
    """Request model for creating a managed object."""

    name: str = Field(..., description="Object name", examples=["my-network"])
    spec: Dict[str, Any] = Field(
        ..., description="Desired state: {'resource': {...}} or {'import': {...}}"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_spec(v)


class ObjectUpdate(BaseModel):
    """Request model for replacing a managed object's spec."""

    spec: Dict[str, Any] = Field(..., description="Updated desired state")
    version: Optional[int] = Field(
        None,
        description="Version the update is based on; omitted means "
        "'whatever is current'",
    )

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_spec(v)


class ObjectResponse(BaseModel):
    """Response model for a managed object."""

    kind: str
    namespace: str
    name: str
    spec: Dict[str, Any]
    status: Dict[str, Any] = {}
    finalizers: List[str] = []
    guards: Dict[str, List[str]] = {}
    deletion_timestamp: Optional[datetime] = None
    generation: int
    version: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_object(cls, obj: ManagedObject) -> "ObjectResponse":
        return cls(**obj.to_dict())


class KindInfo(BaseModel):
    """Response model for a managed kind."""

    kind: str
    version: str
    relations: List[Dict[str, Any]] = []


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for managed objects.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.server = None
        self._on_object_event: Optional[ObjectCallback] = None
        self._store: Optional[ObjectStore] = None
        self._event_bus: Optional[EventBus] = None
        self._routes_ready = False
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").lower(),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)

        self.app = FastAPI(
            title="OpenStack Resource Controller API",
            description="Declarative management of OpenStack resources",
            version="1.0.0",
        )

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_store(self, store: ObjectStore) -> None:
        """Set the object store instance."""
        self._store = store

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming events."""
        self._event_bus = event_bus

    def _require_store(self) -> ObjectStore:
        if not self._store:
            raise HTTPException(status_code=503, detail="Object store not available")
        return self._store

    def _check_path(self, namespace: str, kind: str) -> None:
        try:
            validate_name_format(namespace, "namespace")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        validation = validate_kind(kind)
        if not validation.is_valid:
            raise HTTPException(status_code=404, detail=validation.error_message)

    async def _notify(self, event_type: str, obj: ManagedObject) -> None:
        if self._on_object_event:
            await self._on_object_event(event_type, obj)

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Kind discovery: GET /api/v1/kinds
        - Objects: /api/v1/namespaces/{namespace}/{kind}[/{name}]
        - Watch: GET /api/v1/events (SSE)

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")
        if self._routes_ready:
            return
        self._routes_ready = True

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "orc-operator"}

        @self.app.get("/api/v1/kinds", response_model=List[KindInfo])
        async def list_kinds():
            """List the kinds this controller manages."""
            from plugins.registry import get_registry

            registry = get_registry()
            return [
                KindInfo(**registry.get_actuator_info(kind))
                for kind in registry.list_actuators()
            ]

        # ==================== Object Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/{kind}",
            response_model=ObjectResponse,
            status_code=201,
        )
        async def create_object(namespace: str, kind: str, body: ObjectCreate):
            """Create a managed object."""
            store = self._require_store()
            self._check_path(namespace, kind)

            try:
                created = await store.create(
                    ManagedObject(
                        kind=kind, namespace=namespace, name=body.name, spec=body.spec
                    )
                )
            except ObjectAlreadyExists as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error creating {kind} {namespace}/{body.name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._notify("created", created)
            return ObjectResponse.from_object(created)

        @self.app.get(
            "/api/v1/namespaces/{namespace}/{kind}",
            response_model=List[ObjectResponse],
        )
        async def list_objects(namespace: str, kind: str):
            """List managed objects of one kind in a namespace."""
            store = self._require_store()
            self._check_path(namespace, kind)
            try:
                objects = await store.list(kind=kind, namespace=namespace)
            except Exception as e:
                logger.error(f"Error listing {kind} in {namespace}: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return [ObjectResponse.from_object(obj) for obj in objects]

        @self.app.get(
            "/api/v1/namespaces/{namespace}/{kind}/{name}",
            response_model=ObjectResponse,
        )
        async def get_object(namespace: str, kind: str, name: str):
            """Get a managed object."""
            store = self._require_store()
            self._check_path(namespace, kind)
            obj = await store.get(ObjectKey(kind, namespace, name))
            if obj is None:
                raise HTTPException(status_code=404, detail=f"{kind} {name} not found")
            return ObjectResponse.from_object(obj)

        @self.app.put(
            "/api/v1/namespaces/{namespace}/{kind}/{name}",
            response_model=ObjectResponse,
        )
        async def update_object(
            namespace: str, kind: str, name: str, body: ObjectUpdate
        ):
            """Replace a managed object's spec."""
            store = self._require_store()
            self._check_path(namespace, kind)

            key = ObjectKey(kind, namespace, name)
            current = await store.get(key)
            if current is None:
                raise HTTPException(status_code=404, detail=f"{kind} {name} not found")

            current.spec = body.spec
            expected = body.version if body.version is not None else current.version
            try:
                updated = await store.update_spec(current, expected)
            except ObjectNotFound as e:
                raise HTTPException(status_code=404, detail=str(e))
            except (VersionConflict, ObjectDeleting) as e:
                raise HTTPException(status_code=409, detail=str(e))

            await self._notify("updated", updated)
            return ObjectResponse.from_object(updated)

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/{kind}/{name}", status_code=202
        )
        async def delete_object(namespace: str, kind: str, name: str):
            """Request deletion of a managed object."""
            store = self._require_store()
            self._check_path(namespace, kind)

            key = ObjectKey(kind, namespace, name)
            obj = await store.request_deletion(key)
            if obj is None:
                raise HTTPException(status_code=404, detail=f"{kind} {name} not found")

            await self._notify("deleted", obj)
            return {
                "message": "Object marked for deletion",
                "kind": kind,
                "namespace": namespace,
                "name": name,
                "finalizers": obj.finalizers,
            }

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_events(
            kind: Optional[str] = None,
            namespace: Optional[str] = None,
            since: Optional[int] = None,
        ):
            """SSE stream of change events.

            Optionally filtered by kind and namespace; ``since`` resumes from
            a revision bookmark.
            """
            store = self._require_store()
            try:
                subscriber_id, subscription = await store.watch(kind=kind, since=since)
            except BookmarkExpired as e:
                raise HTTPException(status_code=410, detail=str(e))

            async def event_generator():
                try:
                    async for event in subscription:
                        if namespace and event.obj.namespace != namespace:
                            continue
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await store.unwatch(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self, on_object_event: ObjectCallback) -> None:
        """Start the HTTP server."""
        self._on_object_event = on_object_event
        self._setup_routes()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self._config.get("log_level", "info"),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
