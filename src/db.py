"""
Database Manager - PostgreSQL-backed object store.

Managed objects live in one table. Every write is a conditional
``UPDATE ... WHERE version = $n``; a trigger publishes each committed change
with ``pg_notify`` and a dedicated listening connection turns those
notifications into change events on the store's feed.
"""

import asyncio
import json
import logging
from typing import Any, List, Optional

import asyncpg

from events import EventBus, EventType
from migrate import run_migrations
from objects import ManagedObject, ObjectKey
from store import (
    ObjectAlreadyExists,
    ObjectDeleting,
    ObjectNotFound,
    ObjectStore,
    VersionConflict,
)

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "managed_objects"


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class DatabaseManager(ObjectStore):
    """Object store persisted in PostgreSQL."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
        history_size: int = 1000,
    ):
        super().__init__(event_bus=event_bus, history_size=history_size)
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._listen_conn: Optional[asyncpg.Connection] = None
        self._notifications: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._feed_task: Optional[asyncio.Task] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Stop the change feed and close the connection pool."""
        await self.stop_change_feed()
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Change feed ====================

    async def start_change_feed(self) -> None:
        """LISTEN for change notifications and publish them as watch events."""
        self._listen_conn = await asyncpg.connect(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
        )
        await self._listen_conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
        self._feed_task = asyncio.create_task(self._consume_notifications())
        logger.info(f"Listening for changes on channel {NOTIFY_CHANNEL}")

    async def stop_change_feed(self) -> None:
        if self._listen_conn is not None:
            await self._listen_conn.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._listen_conn.close()
            self._listen_conn = None
        if self._feed_task is not None:
            self._notifications.put_nowait(None)
            await self._feed_task
            self._feed_task = None

    def _on_notify(
        self, connection: asyncpg.Connection, pid: int, channel: str, payload: str
    ) -> None:
        self._notifications.put_nowait(payload)

    async def _consume_notifications(self) -> None:
        while True:
            payload = await self._notifications.get()
            if payload is None:
                break
            try:
                await self.handle_notification(payload)
            except Exception as e:
                logger.error(f"Error handling change notification: {e}", exc_info=True)

    async def handle_notification(self, payload: str) -> None:
        """
        Turn one NOTIFY payload into a change event.

        The row is re-read, so a burst of notifications for one object
        coalesces into events for the versions actually observed.
        """
        data = json.loads(payload)
        key = ObjectKey(data["kind"], data["namespace"], data["name"])
        previous = self._observed.get(key)

        if data["op"] == "DELETE":
            if previous is not None:
                await self._dispatch(EventType.DELETED, previous)
            return

        obj = await self.get(key)
        if obj is None:
            # A DELETE notification follows
            return
        if previous is None:
            await self._dispatch(EventType.ADDED, obj)
        elif obj.version > previous.version:
            await self._dispatch(EventType.MODIFIED, obj)

    # ==================== Reads ====================

    async def get(self, key: ObjectKey) -> Optional[ManagedObject]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM managed_objects
                WHERE kind = $1 AND namespace = $2 AND name = $3
                """,
                key.kind,
                key.namespace,
                key.name,
            )
            if not row:
                return None

            return self._parse_object_row(row)

    async def list(
        self, kind: Optional[str] = None, namespace: Optional[str] = None
    ) -> List[ManagedObject]:
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM managed_objects WHERE TRUE"
            params = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            query += " ORDER BY kind, namespace, name"

            rows = await conn.fetch(query, *params)
            return [self._parse_object_row(row) for row in rows]

    async def _get_many(
        self, kind: str, namespace: str, names: List[str]
    ) -> List[ManagedObject]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM managed_objects
                WHERE kind = $1 AND namespace = $2 AND name = ANY($3::text[])
                ORDER BY name
                """,
                kind,
                namespace,
                names,
            )
            return [self._parse_object_row(row) for row in rows]

    # ==================== Writes ====================

    async def create(self, obj: ManagedObject) -> ManagedObject:
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO managed_objects (
                        kind, namespace, name, spec, status, finalizers, guards
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                    """,
                    obj.kind,
                    obj.namespace,
                    obj.name,
                    json.dumps(obj.spec),
                    json.dumps(obj.status),
                    json.dumps(obj.finalizers),
                    json.dumps(obj.guards),
                )
            except asyncpg.UniqueViolationError as e:
                raise ObjectAlreadyExists(f"{obj.key} already exists") from e

        logger.info(f"Created {obj.key}")
        return self._parse_object_row(row)

    async def _raise_for_failed_write(self, key: ObjectKey, expected: int) -> None:
        """Explain why a conditional write matched no row."""
        current = await self.get(key)
        if current is None:
            raise ObjectNotFound(f"{key} not found")
        if current.version != expected:
            raise VersionConflict(
                f"{key}: expected version {expected}, found {current.version}"
            )
        if current.is_deleting:
            raise ObjectDeleting(f"{key} is being deleted")
        raise VersionConflict(f"{key}: conditional write failed")

    async def update_spec(
        self, obj: ManagedObject, expected_version: int
    ) -> ManagedObject:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE managed_objects
                SET spec = $4::jsonb,
                    generation = CASE
                        WHEN spec = $4::jsonb THEN generation
                        ELSE generation + 1
                    END,
                    version = version + 1,
                    updated_at = NOW()
                WHERE kind = $1 AND namespace = $2 AND name = $3
                  AND version = $5
                  AND deletion_timestamp IS NULL
                RETURNING *
                """,
                obj.kind,
                obj.namespace,
                obj.name,
                json.dumps(obj.spec),
                expected_version,
            )

        if row is None:
            await self._raise_for_failed_write(obj.key, expected_version)

        updated = self._parse_object_row(row)
        logger.info(f"Updated {obj.key} to generation {updated.generation}")
        return updated

    async def patch(self, obj: ManagedObject, expected_version: int) -> int:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE managed_objects
                    SET status = $4,
                        finalizers = $5,
                        guards = $6,
                        version = version + 1,
                        updated_at = NOW()
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                      AND version = $7
                    RETURNING version, deletion_timestamp, finalizers
                    """,
                    obj.kind,
                    obj.namespace,
                    obj.name,
                    json.dumps(obj.status),
                    json.dumps(obj.finalizers),
                    json.dumps(obj.guards),
                    expected_version,
                )

                if row is not None:
                    finalizers = _loads(row["finalizers"], [])
                    if row["deletion_timestamp"] is not None and not finalizers:
                        await self._purge(conn, obj.key)

        if row is None:
            await self._raise_for_failed_write(obj.key, expected_version)
        return row["version"]

    async def request_deletion(self, key: ObjectKey) -> Optional[ManagedObject]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE managed_objects
                    SET version = CASE
                            WHEN deletion_timestamp IS NULL THEN version + 1
                            ELSE version
                        END,
                        deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        updated_at = NOW()
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    RETURNING *
                    """,
                    key.kind,
                    key.namespace,
                    key.name,
                )
                if row is None:
                    return None

                obj = self._parse_object_row(row)
                if not obj.finalizers:
                    await self._purge(conn, key)

        logger.info(f"Marked {key} for deletion")
        return obj

    async def _purge(self, conn: asyncpg.Connection, key: ObjectKey) -> None:
        await conn.execute(
            """
            DELETE FROM managed_objects
            WHERE kind = $1 AND namespace = $2 AND name = $3
            """,
            key.kind,
            key.namespace,
            key.name,
        )
        logger.info(f"Purged {key}")

    def _parse_object_row(self, row: asyncpg.Record) -> ManagedObject:
        """
        Convert a managed_objects row into a ManagedObject.

        JSONB columns may arrive as text or already decoded, depending on
        the connection's codecs.
        """
        return ManagedObject(
            kind=row["kind"],
            namespace=row["namespace"],
            name=row["name"],
            spec=_loads(row["spec"], {}),
            status=_loads(row["status"], {}),
            finalizers=_loads(row["finalizers"], []),
            guards=_loads(row["guards"], {}),
            deletion_timestamp=row["deletion_timestamp"],
            generation=row["generation"],
            version=row["version"],
            created_at=row["created_at"],
        )
