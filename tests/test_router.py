"""Unit tests for router.py - Watch event routing."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from events import EventType, WatchEvent
from objects import ManagedObject
from router import WatchEventRouter
from store import InMemoryObjectStore


def event(kind="Network", name="net"):
    return WatchEvent(EventType.ADDED, obj=ManagedObject(kind, "default", name))


async def wait_for(condition, timeout=1.0):
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.mark.asyncio
class TestDispatch:
    """Tests for offering events to handlers."""

    async def test_every_handler_for_kind(self, store):
        router = WatchEventRouter(store)
        first = AsyncMock(return_value=1)
        second = AsyncMock(return_value=2)
        other = AsyncMock(return_value=5)
        router.add_handler("Network", "first", first)
        router.add_handler("Network", "second", second)
        router.add_handler("Subnet", "other", other)

        assert await router.dispatch(event()) == 3
        other.assert_not_called()
        assert router.kinds() == ["Network", "Subnet"]
        assert router.handler_names("Network") == ["first", "second"]

    async def test_failing_handler_isolated(self, store):
        router = WatchEventRouter(store)
        router.add_handler("Network", "broken", AsyncMock(side_effect=KeyError("x")))
        working = AsyncMock(return_value=1)
        router.add_handler("Network", "working", working)

        assert await router.dispatch(event()) == 1
        working.assert_awaited_once()


@pytest.mark.asyncio
class TestWatches:
    """Tests for the per-kind watch loops."""

    async def test_routes_store_events(self, store, make_object):
        router = WatchEventRouter(store)
        seen = []

        async def handler(e):
            seen.append(e.obj.name)
            return 1

        router.add_handler("Network", "record", handler)
        await router.start()
        try:
            await store.create(make_object("Network", "net"))
            await store.create(make_object("Subnet", "sub"))
            await wait_for(lambda: seen)
        finally:
            await router.stop()

        assert seen == ["net"]
        assert router.bookmark("Network") == 1
        assert not router.running

    async def test_restart_resumes_from_bookmark(self, store, make_object):
        router = WatchEventRouter(store)
        seen = []

        async def handler(e):
            seen.append(e.obj.name)
            return 0

        router.add_handler("Network", "record", handler)
        await router.start()
        await store.create(make_object("Network", "a"))
        await wait_for(lambda: seen == ["a"])
        await router.stop()

        await store.create(make_object("Network", "b"))
        await router.start()
        try:
            await wait_for(lambda: seen == ["a", "b"])
        finally:
            await router.stop()

    async def test_expired_bookmark_resyncs(self, make_object):
        store = InMemoryObjectStore(history_size=1)
        store.resync = AsyncMock(return_value=0)
        router = WatchEventRouter(store)
        router.add_handler("Network", "noop", AsyncMock(return_value=0))
        router._bookmarks["Network"] = 0
        for name in ("a", "b", "c"):
            await store.create(make_object("Network", name))

        await router.start()
        await router.stop()

        store.resync.assert_awaited_once()
