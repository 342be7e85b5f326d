"""
Object Store - list/get/watch/patch interface over managed objects.

Every write is conditional on the version the caller read. Committed writes
are published on the change feed, which also maintains the client-side field
indexes used to answer "which objects reference this name?" without scanning
the whole population.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from events import EventBus, EventSubscription, EventType, WatchEvent
from objects import ManagedObject, ObjectKey

logger = logging.getLogger(__name__)

Extractor = Callable[[ManagedObject], List[str]]


class ObjectStoreError(Exception):
    """Base class for object store errors."""


class ObjectNotFound(ObjectStoreError):
    """The object does not exist (or has been purged)."""


class ObjectAlreadyExists(ObjectStoreError):
    """An object with the same key already exists."""


class VersionConflict(ObjectStoreError):
    """The object changed since the caller read it."""


class ObjectDeleting(ObjectStoreError):
    """The object's spec is immutable because deletion was requested."""


class IndexRegistrationError(ObjectStoreError):
    """A field index could not be registered."""


class BookmarkExpired(ObjectStoreError):
    """A watch bookmark is older than the retained history."""


class FieldIndex:
    """
    Reverse lookup from an extracted value to the objects producing it.

    Values are scoped by namespace: references never cross namespaces.
    """

    def __init__(self, kind: str, name: str, extractor: Extractor):
        self.kind = kind
        self.name = name
        self.extractor = extractor
        self._reverse: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        self._forward: Dict[Tuple[str, str], Set[str]] = {}

    def values_for(self, obj: ManagedObject) -> Set[str]:
        return {value for value in (self.extractor(obj) or []) if value}

    def update(
        self, namespace: str, name: str, obj: Optional[ManagedObject]
    ) -> None:
        """Re-index one object; ``obj=None`` removes it."""
        old_values = self._forward.pop((namespace, name), set())
        new_values = self.values_for(obj) if obj is not None else set()

        for value in old_values - new_values:
            names = self._reverse.get((namespace, value))
            if names is not None:
                names.discard(name)
                if not names:
                    del self._reverse[(namespace, value)]

        for value in new_values:
            self._reverse[(namespace, value)].add(name)
        if new_values:
            self._forward[(namespace, name)] = new_values

    def lookup(self, namespace: str, value: str) -> List[str]:
        return sorted(self._reverse.get((namespace, value), ()))

    def __len__(self) -> int:
        return len(self._forward)


class ObjectStore(ABC):
    """
    Abstract object store.

    Subclasses implement storage; this base class owns the change feed,
    watch history for bookmark resumption and the field indexes.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, history_size: int = 1000):
        self.event_bus = event_bus or EventBus()
        self._indexes: Dict[Tuple[str, str], FieldIndex] = {}
        # Last state seen on the change feed, per object
        self._observed: Dict[ObjectKey, ManagedObject] = {}
        self._history: Deque[WatchEvent] = deque(maxlen=history_size)
        self._revision = 0

    # ==================== Storage ====================

    @abstractmethod
    async def get(self, key: ObjectKey) -> Optional[ManagedObject]:
        """Get an object by key, or None if it does not exist."""

    @abstractmethod
    async def list(
        self, kind: Optional[str] = None, namespace: Optional[str] = None
    ) -> List[ManagedObject]:
        """List objects, optionally filtered by kind and namespace."""

    @abstractmethod
    async def create(self, obj: ManagedObject) -> ManagedObject:
        """Create a new object. Raises ObjectAlreadyExists."""

    @abstractmethod
    async def update_spec(
        self, obj: ManagedObject, expected_version: int
    ) -> ManagedObject:
        """
        Replace an object's spec, bumping its generation if it changed.

        Raises:
            VersionConflict, ObjectNotFound, ObjectDeleting
        """

    @abstractmethod
    async def patch(self, obj: ManagedObject, expected_version: int) -> int:
        """
        Write an object's status, finalizers and guards in one conditional write.

        Purges the object when deletion was requested and no finalizers
        remain.

        Returns:
            The new version token.

        Raises:
            VersionConflict, ObjectNotFound
        """

    @abstractmethod
    async def request_deletion(self, key: ObjectKey) -> Optional[ManagedObject]:
        """Mark an object for deletion. Returns None if it does not exist."""

    @abstractmethod
    async def _get_many(
        self, kind: str, namespace: str, names: List[str]
    ) -> List[ManagedObject]:
        """Fetch several objects of one kind and namespace by name."""

    # ==================== Field indexes ====================

    def register_index(
        self, kind: str, index_name: str, extractor: Extractor
    ) -> FieldIndex:
        """
        Register a field index over objects of ``kind``.

        Must be called before the watches that rely on it start.

        Raises:
            IndexRegistrationError: If the index name is already taken.
        """
        if (kind, index_name) in self._indexes:
            raise IndexRegistrationError(
                f"Index '{index_name}' is already registered for kind {kind}"
            )

        index = FieldIndex(kind, index_name, extractor)
        for key, obj in self._observed.items():
            if key.kind == kind:
                index.update(key.namespace, key.name, obj)

        self._indexes[(kind, index_name)] = index
        logger.info(f"Registered field index {kind}:{index_name}")
        return index

    def has_index(self, kind: str, index_name: str) -> bool:
        return (kind, index_name) in self._indexes

    async def list_by_index(
        self, kind: str, namespace: str, index_name: str, value: str
    ) -> List[ManagedObject]:
        """Return objects of ``kind`` whose index values include ``value``."""
        index = self._indexes.get((kind, index_name))
        if index is None:
            raise IndexRegistrationError(
                f"No index '{index_name}' registered for kind {kind}"
            )

        names = index.lookup(namespace, value)
        if not names:
            return []
        return await self._get_many(kind, namespace, names)

    # ==================== Change feed ====================

    @property
    def revision(self) -> int:
        """Bookmark of the most recent change event."""
        return self._revision

    async def _dispatch(self, event_type: EventType, obj: ManagedObject) -> WatchEvent:
        """Record a committed change, update indexes and publish it."""
        key = obj.key
        old = self._observed.get(key)

        if event_type == EventType.DELETED:
            self._observed.pop(key, None)
        else:
            self._observed[key] = obj.copy()

        for (kind, _), index in self._indexes.items():
            if kind == key.kind:
                index.update(
                    key.namespace,
                    key.name,
                    None if event_type == EventType.DELETED else obj,
                )

        self._revision += 1
        event = WatchEvent(
            event_type=event_type,
            obj=obj.copy(),
            old_obj=old,
            revision=self._revision,
        )
        self._history.append(event)
        await self.event_bus.publish(event)
        return event

    async def watch(
        self, kind: Optional[str] = None, since: Optional[int] = None
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to change events, optionally resuming from a bookmark.

        Delivery is at-least-once: an event committed while subscribing may
        be seen twice.

        Raises:
            BookmarkExpired: If ``since`` predates the retained history;
                callers fall back to :meth:`resync`.
        """

        def filter_fn(event: WatchEvent) -> bool:
            return kind is None or event.kind == kind

        backlog: List[WatchEvent] = []
        if since is not None and since < self._revision:
            oldest = self._history[0].revision if self._history else None
            if oldest is None or since + 1 < oldest:
                raise BookmarkExpired(
                    f"Bookmark {since} is older than retained history "
                    f"(oldest {oldest})"
                )
            backlog = [e for e in self._history if e.revision > since and filter_fn(e)]

        return await self.event_bus.subscribe(filter_fn, backlog=backlog)

    async def unwatch(self, subscriber_id: str) -> None:
        await self.event_bus.unsubscribe(subscriber_id)

    async def resync(self) -> int:
        """
        Full resync: reconcile the change feed's view with storage.

        Emits synthetic events for every difference found.

        Returns:
            Number of events emitted.
        """
        current = {obj.key: obj for obj in await self.list()}
        emitted = 0

        for key in list(self._observed):
            if key not in current:
                await self._dispatch(EventType.DELETED, self._observed[key])
                emitted += 1

        for key, obj in current.items():
            previous = self._observed.get(key)
            if previous is None:
                await self._dispatch(EventType.ADDED, obj)
                emitted += 1
            elif previous.version != obj.version:
                await self._dispatch(EventType.MODIFIED, obj)
                emitted += 1

        if emitted:
            logger.info(f"Resync emitted {emitted} events")
        return emitted


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryObjectStore(ObjectStore):
    """Object store held in process memory. Used for tests and local runs."""

    def __init__(self, event_bus: Optional[EventBus] = None, history_size: int = 1000):
        super().__init__(event_bus=event_bus, history_size=history_size)
        self._objects: Dict[ObjectKey, ManagedObject] = {}

    def _require(self, key: ObjectKey, expected_version: int) -> ManagedObject:
        current = self._objects.get(key)
        if current is None:
            raise ObjectNotFound(f"{key} not found")
        if current.version != expected_version:
            raise VersionConflict(
                f"{key}: expected version {expected_version}, "
                f"found {current.version}"
            )
        return current

    async def get(self, key: ObjectKey) -> Optional[ManagedObject]:
        obj = self._objects.get(key)
        return obj.copy() if obj is not None else None

    async def list(
        self, kind: Optional[str] = None, namespace: Optional[str] = None
    ) -> List[ManagedObject]:
        return [
            obj.copy()
            for key, obj in sorted(self._objects.items())
            if (kind is None or key.kind == kind)
            and (namespace is None or key.namespace == namespace)
        ]

    async def _get_many(
        self, kind: str, namespace: str, names: List[str]
    ) -> List[ManagedObject]:
        result = []
        for name in names:
            obj = self._objects.get(ObjectKey(kind, namespace, name))
            if obj is not None:
                result.append(obj.copy())
        return result

    async def create(self, obj: ManagedObject) -> ManagedObject:
        if obj.key in self._objects:
            raise ObjectAlreadyExists(f"{obj.key} already exists")

        stored = obj.copy()
        stored.version = 1
        stored.generation = 1
        stored.deletion_timestamp = None
        stored.created_at = _utcnow()
        self._objects[stored.key] = stored
        logger.debug(f"Created {stored.key}")

        await self._dispatch(EventType.ADDED, stored)
        return stored.copy()

    async def update_spec(
        self, obj: ManagedObject, expected_version: int
    ) -> ManagedObject:
        current = self._require(obj.key, expected_version)
        if current.is_deleting:
            raise ObjectDeleting(f"{obj.key} is being deleted")

        if current.spec != obj.spec:
            current.spec = obj.copy().spec
            current.generation += 1
        current.version += 1

        await self._dispatch(EventType.MODIFIED, current)
        return current.copy()

    async def patch(self, obj: ManagedObject, expected_version: int) -> int:
        current = self._require(obj.key, expected_version)
        update = obj.copy()
        current.status = update.status
        current.finalizers = update.finalizers
        current.guards = update.guards
        current.version += 1

        if current.is_deleting and not current.finalizers:
            del self._objects[current.key]
            logger.debug(f"Purged {current.key}")
            await self._dispatch(EventType.DELETED, current)
        else:
            await self._dispatch(EventType.MODIFIED, current)
        return current.version

    async def request_deletion(self, key: ObjectKey) -> Optional[ManagedObject]:
        current = self._objects.get(key)
        if current is None:
            return None
        if current.is_deleting:
            return current.copy()

        current.deletion_timestamp = _utcnow()
        current.version += 1

        if not current.finalizers:
            del self._objects[key]
            logger.debug(f"Purged {key}")
            await self._dispatch(EventType.DELETED, current)
        else:
            await self._dispatch(EventType.MODIFIED, current)
        return current.copy()


async def update_with_retry(
    store: ObjectStore,
    key: ObjectKey,
    mutate: Callable[[ManagedObject], bool],
    max_attempts: int = 10,
) -> Optional[ManagedObject]:
    """
    Read-modify-write with optimistic concurrency.

    ``mutate`` edits the object in place and returns False when nothing
    needs writing. Conflicts are retried immediately against a fresh read.

    Returns:
        The written (or unchanged) object, or None if it does not exist.
    """
    for attempt in range(1, max_attempts + 1):
        obj = await store.get(key)
        if obj is None:
            return None
        if not mutate(obj):
            return obj
        try:
            obj.version = await store.patch(obj, obj.version)
            return obj
        except VersionConflict:
            logger.debug(f"Version conflict updating {key} (attempt {attempt})")
        except ObjectNotFound:
            return None

    raise VersionConflict(f"{key}: gave up after {max_attempts} conflicting updates")
