"""
Watch Event Router - fans change events out to reconcile handlers.

One watch is opened per kind that has handlers. Each event is offered to
every handler registered for its kind; handlers decide, through their
predicates, whether anything gets enqueued.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from events import EventSubscription, WatchEvent
from store import BookmarkExpired, ObjectStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[WatchEvent], Awaitable[int]]


class WatchEventRouter:
    """Routes store change events to the handlers registered per kind."""

    def __init__(self, store: ObjectStore):
        self.store = store
        self.running = False
        self._handlers: Dict[str, List[Tuple[str, EventHandler]]] = defaultdict(list)
        self._subscriptions: Dict[str, str] = {}
        self._bookmarks: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def add_handler(self, kind: str, name: str, handler: EventHandler) -> None:
        """Register a handler for change events on ``kind``."""
        self._handlers[kind].append((name, handler))
        logger.debug(f"Registered watch handler {name} on {kind}")

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    def handler_names(self, kind: str) -> List[str]:
        return [name for name, _ in self._handlers.get(kind, [])]

    def bookmark(self, kind: str) -> Optional[int]:
        """Revision of the last event routed for ``kind``."""
        return self._bookmarks.get(kind)

    async def dispatch(self, event: WatchEvent) -> int:
        """
        Offer one event to every handler for its kind.

        A failing handler is logged and skipped; the others still run.

        Returns:
            Total number of reconcile requests enqueued.
        """
        enqueued = 0
        for name, handler in self._handlers.get(event.kind, []):
            try:
                enqueued += await handler(event)
            except Exception as e:
                logger.error(
                    f"Watch handler {name} failed on {event.event_type.value} "
                    f"{event.obj.key}: {e}",
                    exc_info=True,
                )
        return enqueued

    async def _subscribe(self, kind: str) -> Tuple[str, EventSubscription]:
        """Open a watch on ``kind``, resuming from its bookmark if possible."""
        since = self._bookmarks.get(kind)
        try:
            return await self.store.watch(kind=kind, since=since)
        except BookmarkExpired as e:
            logger.warning(f"Watch on {kind} cannot resume ({e}); resyncing")
            subscription = await self.store.watch(kind=kind)
            await self.store.resync()
            return subscription

    async def _run(self, kind: str, subscription: EventSubscription) -> None:
        async for event in subscription:
            self._bookmarks[kind] = event.revision
            await self.dispatch(event)
        logger.debug(f"Watch on {kind} closed")

    async def start(self) -> None:
        """Open a watch for every kind with registered handlers."""
        self.running = True
        for kind in self.kinds():
            await self.restart(kind)
        logger.info(f"Watching kinds: {', '.join(self.kinds()) or 'none'}")

    async def restart(self, kind: str) -> None:
        """(Re)open the watch on one kind from its last bookmark."""
        await self._close(kind)
        subscriber_id, subscription = await self._subscribe(kind)
        self._subscriptions[kind] = subscriber_id
        self._tasks[kind] = asyncio.create_task(self._run(kind, subscription))

    async def _close(self, kind: str) -> None:
        subscriber_id = self._subscriptions.pop(kind, None)
        if subscriber_id is not None:
            await self.store.unwatch(subscriber_id)
        task = self._tasks.pop(kind, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def stop(self) -> None:
        """Close every watch."""
        self.running = False
        for kind in list(self._tasks):
            await self._close(kind)
