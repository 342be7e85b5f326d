"""Unit tests for db.py - PostgreSQL object store."""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from db import NOTIFY_CHANNEL, DatabaseManager
from events import EventType
from objects import ManagedObject, ObjectKey
from store import (
    ObjectAlreadyExists,
    ObjectDeleting,
    ObjectNotFound,
    VersionConflict,
)

NET = ObjectKey("Network", "default", "net")
CREATED = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def make_row(**overrides):
    """A managed_objects row with JSONB columns encoded as text."""
    row = {
        "kind": "Network",
        "namespace": "default",
        "name": "net",
        "spec": '{"resource": {"description": "test"}}',
        "status": "{}",
        "finalizers": "[]",
        "guards": "{}",
        "deletion_timestamp": None,
        "generation": 1,
        "version": 1,
        "created_at": CREATED,
    }
    row.update(overrides)
    return row


def attach_connection(pool, conn):
    """Make ``pool.acquire()`` and ``conn.transaction()`` usable as contexts."""

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    @asynccontextmanager
    async def mock_transaction():
        yield

    pool.acquire = mock_acquire
    conn.transaction = MagicMock(side_effect=mock_transaction)


@pytest.fixture
def db_manager():
    return DatabaseManager(
        host="localhost",
        port=5432,
        database="testdb",
        user="testuser",
        password="testpass",
    )


@pytest.fixture
def connected(db_manager, mock_pool, mock_connection):
    """A DatabaseManager whose pool hands out ``mock_connection``."""
    attach_connection(mock_pool, mock_connection)
    db_manager.pool = mock_pool
    return db_manager


class TestDatabaseManager:
    """Tests for DatabaseManager construction and row parsing."""

    def test_init(self):
        db = DatabaseManager(
            host="localhost",
            port=5432,
            database="testdb",
            user="testuser",
            password="testpass",
            min_pool_size=3,
            max_pool_size=10,
        )
        assert db.host == "localhost"
        assert db.database == "testdb"
        assert db.min_pool_size == 3
        assert db.max_pool_size == 10
        assert db.pool is None

    def test_init_default_pool_sizes(self, db_manager):
        assert db_manager.min_pool_size == 5
        assert db_manager.max_pool_size == 20

    def test_ensure_connected_raises_when_not_connected(self, db_manager):
        """Test _ensure_connected raises when pool is None."""
        with pytest.raises(RuntimeError) as exc_info:
            db_manager._ensure_connected()
        assert "Database not connected" in str(exc_info.value)

    def test_parse_object_row(self, db_manager):
        obj = db_manager._parse_object_row(
            make_row(
                finalizers='["openstack.orc.io/network"]',
                guards='{"openstack.orc.io/subnet": ["subnet/networkRef"]}',
            )
        )
        assert obj.key == NET
        assert obj.spec == {"resource": {"description": "test"}}
        assert obj.finalizers == ["openstack.orc.io/network"]
        assert obj.guards == {"openstack.orc.io/subnet": ["subnet/networkRef"]}
        assert obj.created_at == CREATED

    def test_parse_object_row_decoded_and_null_json(self, db_manager):
        """JSONB columns may already be decoded, or NULL."""
        obj = db_manager._parse_object_row(
            make_row(spec={"resource": {}}, status=None, guards=None)
        )
        assert obj.spec == {"resource": {}}
        assert obj.status == {}
        assert obj.guards == {}


@pytest.mark.asyncio
class TestConnection:
    """Tests for pool lifecycle and schema setup."""

    async def test_connect(self, db_manager):
        with patch("db.asyncpg.create_pool", new_callable=AsyncMock) as mock_create:
            mock_pool = AsyncMock()
            mock_create.return_value = mock_pool

            await db_manager.connect()

            mock_create.assert_called_once_with(
                host="localhost",
                port=5432,
                database="testdb",
                user="testuser",
                password="testpass",
                min_size=5,
                max_size=20,
                command_timeout=60,
            )
            assert db_manager.pool is mock_pool

    async def test_close(self, db_manager, mock_pool):
        db_manager.pool = mock_pool
        await db_manager.close()
        mock_pool.close.assert_called_once()

    async def test_close_when_not_connected(self, db_manager):
        db_manager.pool = None
        await db_manager.close()

    async def test_initialize_schema(self, connected):
        with patch("db.run_migrations", new_callable=AsyncMock) as migrate:
            await connected.initialize_schema()
        migrate.assert_awaited_once_with(connected.pool)

    async def test_initialize_schema_not_connected(self, db_manager):
        with pytest.raises(RuntimeError):
            await db_manager.initialize_schema()


@pytest.mark.asyncio
class TestReads:
    async def test_get(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row()

        obj = await connected.get(NET)

        assert obj.name == "net"
        args = mock_connection.fetchrow.call_args.args
        assert args[1:] == ("Network", "default", "net")

    async def test_get_missing(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = None
        assert await connected.get(NET) is None

    async def test_list_with_filters(self, connected, mock_connection):
        mock_connection.fetch.return_value = [make_row()]

        objects = await connected.list(kind="Network", namespace="default")

        assert [o.name for o in objects] == ["net"]
        query, *params = mock_connection.fetch.call_args.args
        assert "kind = $1" in query
        assert "namespace = $2" in query
        assert params == ["Network", "default"]

    async def test_list_all(self, connected, mock_connection):
        mock_connection.fetch.return_value = []
        await connected.list()
        query, *params = mock_connection.fetch.call_args.args
        assert params == []
        assert "ORDER BY kind, namespace, name" in query


@pytest.mark.asyncio
class TestWrites:
    """Tests for conditional writes."""

    async def test_create(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row()
        obj = ManagedObject(
            "Network", "default", "net", spec={"resource": {"description": "test"}}
        )

        created = await connected.create(obj)

        assert created.version == 1
        args = mock_connection.fetchrow.call_args.args
        assert json.loads(args[4]) == {"resource": {"description": "test"}}

    async def test_create_duplicate(self, connected, mock_connection):
        mock_connection.fetchrow.side_effect = asyncpg.UniqueViolationError(
            "duplicate key"
        )
        with pytest.raises(ObjectAlreadyExists):
            await connected.create(ManagedObject("Network", "default", "net"))

    async def test_update_spec(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row(generation=2, version=2)
        obj = ManagedObject("Network", "default", "net", spec={"resource": {}})

        updated = await connected.update_spec(obj, 1)

        assert updated.generation == 2
        assert mock_connection.fetchrow.call_args.args[-1] == 1

    async def test_update_spec_conflict(self, connected, mock_connection):
        mock_connection.fetchrow.side_effect = [None, make_row(version=5)]
        obj = ManagedObject("Network", "default", "net")
        with pytest.raises(VersionConflict):
            await connected.update_spec(obj, 1)

    async def test_update_spec_deleting(self, connected, mock_connection):
        deleting = make_row(deletion_timestamp=CREATED)
        mock_connection.fetchrow.side_effect = [None, deleting]
        obj = ManagedObject("Network", "default", "net")
        with pytest.raises(ObjectDeleting):
            await connected.update_spec(obj, 1)

    async def test_update_spec_missing(self, connected, mock_connection):
        mock_connection.fetchrow.side_effect = [None, None]
        obj = ManagedObject("Network", "default", "net")
        with pytest.raises(ObjectNotFound):
            await connected.update_spec(obj, 1)

    async def test_patch(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = {
            "version": 4,
            "deletion_timestamp": None,
            "finalizers": "[]",
        }
        obj = ManagedObject("Network", "default", "net", status={"id": "n-1"})

        assert await connected.patch(obj, 3) == 4
        mock_connection.execute.assert_not_called()

    async def test_patch_purges_released_object(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = {
            "version": 4,
            "deletion_timestamp": CREATED,
            "finalizers": "[]",
        }

        await connected.patch(ManagedObject("Network", "default", "net"), 3)

        query = mock_connection.execute.call_args.args[0]
        assert "DELETE FROM managed_objects" in query

    async def test_patch_keeps_object_with_finalizers(
        self, connected, mock_connection
    ):
        mock_connection.fetchrow.return_value = {
            "version": 4,
            "deletion_timestamp": CREATED,
            "finalizers": '["openstack.orc.io/network"]',
        }
        await connected.patch(ManagedObject("Network", "default", "net"), 3)
        mock_connection.execute.assert_not_called()

    async def test_patch_conflict(self, connected, mock_connection):
        mock_connection.fetchrow.side_effect = [None, make_row(version=9)]
        with pytest.raises(VersionConflict):
            await connected.patch(ManagedObject("Network", "default", "net"), 3)

    async def test_request_deletion_purges(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row(deletion_timestamp=CREATED)

        obj = await connected.request_deletion(NET)

        assert obj.is_deleting
        mock_connection.execute.assert_awaited_once()

    async def test_request_deletion_with_finalizers(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row(
            deletion_timestamp=CREATED, finalizers='["openstack.orc.io/network"]'
        )
        obj = await connected.request_deletion(NET)
        assert obj.finalizers == ["openstack.orc.io/network"]
        mock_connection.execute.assert_not_called()

    async def test_request_deletion_missing(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = None
        assert await connected.request_deletion(NET) is None


@pytest.mark.asyncio
class TestChangeFeed:
    """Tests for turning NOTIFY payloads into watch events."""

    @staticmethod
    def payload(op="UPDATE"):
        return json.dumps(
            {"op": op, "kind": "Network", "namespace": "default", "name": "net"}
        )

    async def test_insert_then_update(self, connected, mock_connection):
        _, sub = await connected.watch()
        mock_connection.fetchrow.side_effect = [make_row(), make_row(version=2)]

        await connected.handle_notification(self.payload("INSERT"))
        await connected.handle_notification(self.payload())

        added = await sub.__anext__()
        modified = await sub.__anext__()
        assert added.event_type == EventType.ADDED
        assert modified.event_type == EventType.MODIFIED
        assert modified.old_obj.version == 1

    async def test_stale_notification_ignored(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row(version=2)
        await connected.handle_notification(self.payload())
        revision = connected.revision

        await connected.handle_notification(self.payload())

        assert connected.revision == revision

    async def test_delete(self, connected, mock_connection):
        mock_connection.fetchrow.return_value = make_row()
        await connected.handle_notification(self.payload("INSERT"))
        _, sub = await connected.watch()

        await connected.handle_notification(self.payload("DELETE"))

        assert (await sub.__anext__()).event_type == EventType.DELETED

    async def test_delete_of_unseen_object(self, connected):
        await connected.handle_notification(self.payload("DELETE"))
        assert connected.revision == 0

    async def test_start_and_stop(self, db_manager):
        listen_conn = AsyncMock()
        with patch("db.asyncpg.connect", new_callable=AsyncMock) as connect:
            connect.return_value = listen_conn
            await db_manager.start_change_feed()
            await db_manager.stop_change_feed()

        listen_conn.add_listener.assert_awaited_once_with(
            NOTIFY_CHANNEL, db_manager._on_notify
        )
        listen_conn.remove_listener.assert_awaited_once()
        listen_conn.close.assert_awaited_once()
        assert db_manager._feed_task is None

    async def test_notify_callback_queues_payload(self, db_manager):
        db_manager._on_notify(None, 1, NOTIFY_CHANNEL, "payload")
        assert db_manager._notifications.get_nowait() == "payload"
