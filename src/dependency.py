"""
Dependency relations and deletion guards.

A DependencyRelation declares how a Source kind references objects of a
Target kind by name. Registering it builds a field index on the Source kind,
so that "which Sources reference this Target?" is answered without a scan.

A DeletionGuardRelation additionally reference-counts the Target: while any
Source references it under the relation, the Target carries a guard record
(finalizer token + owner identity) that blocks its deletion. Guard records
are applied with optimistic-concurrency patches, so guard updates from many
Sources commute and are safe to retry.
"""

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from events import EventType, WatchEvent
from objects import ManagedObject, ObjectKey, is_available
from predicates import became_available
from progress import ProgressStatus
from store import (
    IndexRegistrationError,
    ObjectNotFound,
    ObjectStore,
    VersionConflict,
    update_with_retry,
)

logger = logging.getLogger(__name__)

Extractor = Callable[[ManagedObject], List[str]]
Enqueue = Callable[[ObjectKey], None]
EventHandler = Callable[[WatchEvent], Awaitable[int]]
Predicate = Callable[[WatchEvent], bool]


class RelationSetupError(Exception):
    """One or more relations failed to register. Carries every failure."""

    def __init__(self, errors: List[Exception]):
        self.errors = errors
        super().__init__(
            f"{len(errors)} relation(s) failed to register: "
            + "; ".join(str(e) for e in errors)
        )


def add_guard_record(obj: ManagedObject, finalizer: str, owner: str) -> bool:
    """Add a guard record, and the finalizer token if it is the first one."""
    changed = False
    owners = obj.guards.setdefault(finalizer, [])
    if owner not in owners:
        owners.append(owner)
        owners.sort()
        changed = True
    if finalizer not in obj.finalizers:
        obj.finalizers.append(finalizer)
        changed = True
    return changed


def remove_guard_record(obj: ManagedObject, finalizer: str, owner: str) -> bool:
    """Remove a guard record; drop the token once no record remains under it."""
    if finalizer not in obj.guards:
        return False

    changed = False
    owners = obj.guards[finalizer]
    if owner in owners:
        owners.remove(owner)
        changed = True
    if not owners:
        del obj.guards[finalizer]
        if finalizer in obj.finalizers:
            obj.finalizers.remove(finalizer)
        changed = True
    return changed


def guard_tokens(obj: ManagedObject) -> List[str]:
    """Finalizer tokens currently held on the object by deletion guards."""
    return sorted(token for token, owners in obj.guards.items() if owners)


class DependencyRelation:
    """A Source kind's named references to a Target kind."""

    guarded = False

    def __init__(
        self,
        source_kind: str,
        target_kind: str,
        index_name: str,
        extractor: Extractor,
    ):
        self.source_kind = source_kind
        self.target_kind = target_kind
        self.index_name = index_name
        self._extractor = extractor

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.source_kind}->{self.target_kind}, "
            f"{self.index_name!r})"
        )

    def references(self, obj: ManagedObject) -> List[str]:
        """Target names referenced by ``obj``, de-duplicated, in order."""
        seen: Dict[str, None] = {}
        for name in self._extractor(obj) or []:
            if name:
                seen.setdefault(name, None)
        return list(seen)

    def register(self, store: ObjectStore) -> None:
        store.register_index(self.source_kind, self.index_name, self.references)

    async def referencing(
        self, store: ObjectStore, namespace: str, target_name: str
    ) -> List[ManagedObject]:
        """Sources in ``namespace`` that reference ``target_name``."""
        return await store.list_by_index(
            self.source_kind, namespace, self.index_name, target_name
        )

    async def resolve(
        self, store: ObjectStore, obj: ManagedObject
    ) -> Tuple[List[ManagedObject], List[ProgressStatus]]:
        """
        Look up every Target ``obj`` references.

        Returns:
            The ready Targets, and one WaitingForDependency status for each
            Target that is missing, being deleted, or not Available.
        """
        ready: List[ManagedObject] = []
        waiting: List[ProgressStatus] = []

        for name in self.references(obj):
            target = await store.get(ObjectKey(self.target_kind, obj.namespace, name))
            if target is None:
                waiting.append(
                    ProgressStatus.waiting_for_dependency(
                        name, f"{self.target_kind} {name} does not exist"
                    )
                )
            elif target.is_deleting:
                waiting.append(
                    ProgressStatus.waiting_for_dependency(
                        name, f"{self.target_kind} {name} is being deleted"
                    )
                )
            elif not is_available(target):
                waiting.append(
                    ProgressStatus.waiting_for_dependency(
                        name, f"{self.target_kind} {name} is not available"
                    )
                )
            else:
                ready.append(target)

        return ready, waiting

    def watch_event_handler(
        self,
        store: ObjectStore,
        enqueue: Enqueue,
        predicate: Predicate = became_available,
    ) -> EventHandler:
        """
        Build a handler for Target events that wakes referencing Sources.

        Only events passing ``predicate`` are forwarded, by default those
        where the Target became Available.
        """

        async def handler(event: WatchEvent) -> int:
            if not predicate(event):
                return 0
            target = event.obj
            sources = await self.referencing(store, target.namespace, target.name)
            for source in sources:
                enqueue(source.key)
            if sources:
                logger.debug(
                    f"{self.target_kind} {target.namespace}/{target.name} "
                    f"woke {len(sources)} {self.source_kind}(s) via {self.index_name}"
                )
            return len(sources)

        return handler


class DeletionGuardRelation(DependencyRelation):
    """
    A dependency relation that also protects its Targets from deletion.

    ``owner`` must be unique per relation: when two relations guard the
    same Target with the same finalizer token, the owner identity is what
    stops one relation's release from erasing the other's guard.
    """

    guarded = True

    def __init__(
        self,
        source_kind: str,
        target_kind: str,
        index_name: str,
        extractor: Extractor,
        finalizer: str,
        owner: str,
    ):
        super().__init__(source_kind, target_kind, index_name, extractor)
        self.finalizer = finalizer
        self.owner = owner

    def _target_key(self, namespace: str, name: str) -> ObjectKey:
        return ObjectKey(self.target_kind, namespace, name)

    async def add_guards(
        self, store: ObjectStore, namespace: str, names: Iterable[str]
    ) -> List[str]:
        """
        Idempotently place this relation's guard on each named Target.

        Every call writes the Target, even when the record is already there,
        so that a release which read the Target earlier fails its version
        check and re-examines the referencing Sources.

        Returns:
            Names of Targets that could not be guarded because they no
            longer exist or are being deleted without this guard.
        """
        refused: List[str] = []

        for name in names:

            def guard(target: ManagedObject) -> bool:
                held = self.owner in target.guards.get(self.finalizer, [])
                if target.is_deleting and not held:
                    refused.append(name)
                    return False
                add_guard_record(target, self.finalizer, self.owner)
                return True

            result = await update_with_retry(
                store, self._target_key(namespace, name), guard
            )
            if result is None:
                refused.append(name)
        return refused

    async def current_referrers(
        self,
        store: ObjectStore,
        namespace: str,
        target_name: str,
        exclude: Optional[ObjectKey] = None,
    ) -> List[ManagedObject]:
        """
        Sources referencing ``target_name``, read from the store itself.

        The field index follows the change feed and may trail the store, so
        release decisions use a direct read instead.
        """
        return [
            source
            for source in await store.list(kind=self.source_kind, namespace=namespace)
            if source.key != exclude and target_name in self.references(source)
        ]

    async def release_guards(
        self,
        store: ObjectStore,
        namespace: str,
        names: Iterable[str],
        source_key: ObjectKey,
    ) -> List[str]:
        """
        Release this relation's guard on Targets no other Source still needs.

        Returns:
            Names of the Targets whose guard record was removed.
        """
        released = []
        for name in names:
            if await self._release(store, namespace, name, source_key):
                released.append(name)
        return released

    async def _release(
        self,
        store: ObjectStore,
        namespace: str,
        name: str,
        source_key: ObjectKey,
        max_attempts: int = 10,
    ) -> bool:
        key = self._target_key(namespace, name)

        for attempt in range(1, max_attempts + 1):
            # Read the Target before the Sources: a Source that starts
            # referencing it afterwards bumps its version in add_guards.
            target = await store.get(key)
            if target is None or self.finalizer not in target.guards:
                return False

            others = await self.current_referrers(store, namespace, name, source_key)
            if others:
                logger.debug(
                    f"Keeping {self.owner} guard on {self.target_kind} "
                    f"{namespace}/{name}: still referenced by "
                    f"{', '.join(s.name for s in others)}"
                )
                return False

            if not remove_guard_record(target, self.finalizer, self.owner):
                return False
            try:
                await store.patch(target, target.version)
            except VersionConflict:
                logger.debug(
                    f"Version conflict releasing guard on {key} (attempt {attempt})"
                )
                continue
            except ObjectNotFound:
                return False

            logger.info(
                f"Released {self.owner} guard on {self.target_kind} "
                f"{namespace}/{name}"
            )
            return True

        raise VersionConflict(f"{key}: gave up releasing guard after {max_attempts}")

    async def sweep(self, store: ObjectStore, target: ManagedObject) -> bool:
        """
        Release this relation's guard on ``target`` if nothing references it.

        Runs from the Target's side as a backstop for Sources that vanished
        without releasing their guards.
        """
        if self.owner not in target.guards.get(self.finalizer, []):
            return False
        return await self._release(store, target.namespace, target.name, target.key)

    def dropped_references(self, event: WatchEvent) -> List[str]:
        """Targets the Source referenced before this event but not after."""
        if event.old_obj is None:
            return []
        old_refs = self.references(event.old_obj)
        if event.event_type == EventType.DELETED:
            return old_refs
        new_refs = set(self.references(event.obj))
        return [name for name in old_refs if name not in new_refs]

    def guard_release_handler(self, enqueue: Enqueue) -> EventHandler:
        """
        Build a handler for Source events that wakes Targets losing a reference.

        A Target waiting to be deleted re-enters reconciliation exactly when
        one of its guards may have become releasable.
        """

        async def handler(event: WatchEvent) -> int:
            dropped = self.dropped_references(event)
            for name in dropped:
                enqueue(self._target_key(event.obj.namespace, name))
            return len(dropped)

        return handler


def register_relations(
    store: ObjectStore, relations: Iterable[DependencyRelation]
) -> None:
    """
    Register the field indexes for a set of relations.

    Every relation is attempted; failures are collected and raised together
    so that one bad relation never hides another or disables the rest.

    Raises:
        RelationSetupError: If any relation failed to register.
    """
    errors: List[Exception] = []
    guard_owners: Dict[Tuple[str, str, str], DependencyRelation] = {}

    for relation in relations:
        if isinstance(relation, DeletionGuardRelation):
            owner_key = (relation.target_kind, relation.finalizer, relation.owner)
            existing = guard_owners.get(owner_key)
            if existing is not None:
                errors.append(
                    IndexRegistrationError(
                        f"Guard owner '{relation.owner}' on {relation.target_kind} "
                        f"is shared by {existing.index_name!r} and "
                        f"{relation.index_name!r}"
                    )
                )
                continue
            guard_owners[owner_key] = relation

        try:
            relation.register(store)
        except IndexRegistrationError as e:
            errors.append(e)

    if errors:
        raise RelationSetupError(errors)
