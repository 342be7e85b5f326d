"""
Reconcile Controller - Per-kind reconcile loops over the object store.

Similar to Kubernetes controllers, each kind gets a work queue fed by the
watch event router, a pool of worker tasks draining it, and a
ReconcileController that drives one object at a time towards its desired
state through the kind's ResourceActuator.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from dependency import (
    DeletionGuardRelation,
    DependencyRelation,
    guard_tokens,
    register_relations,
)
from events import EventType, WatchEvent
from objects import (
    CONDITION_AVAILABLE,
    CONDITION_FALSE,
    CONDITION_PROGRESSING,
    CONDITION_TRUE,
    REASON_DELETING,
    REASON_INVALID_CONFIGURATION,
    REASON_PROGRESSING,
    REASON_SUCCESS,
    REASON_TRANSIENT_ERROR,
    REASON_UNRECOVERABLE_ERROR,
    REASON_WAITING,
    ManagedObject,
    ObjectKey,
    controller_finalizer,
    is_terminal,
    set_condition,
)
from plugins.actuators.base import ActuatorContext, ResourceActuator
from plugins.registry import PluginRegistry
from predicates import spec_or_lifecycle_changed
from progress import (
    CloudError,
    NotFound,
    ProgressKind,
    ProgressStatus,
    TerminalError,
    ValidationFailed,
    classify_error,
    combine,
)
from router import WatchEventRouter
from store import ObjectStore, VersionConflict, update_with_retry
from workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    resync_interval: int = 600
    max_concurrent_reconciles: int = 5
    kind_concurrency: Optional[Dict[str, int]] = None
    reconcile_timeout: float = 300.0
    enabled_kinds: Optional[List[str]] = None
    actuator_configs: Optional[Dict[str, Dict[str, Any]]] = None

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 300.0
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Polling of the external API
    import_poll_interval: float = 60.0
    availability_poll_interval: float = 10.0

    transient_error_threshold: int = 5

    def __post_init__(self):
        if self.kind_concurrency is None:
            self.kind_concurrency = {}
        if self.actuator_configs is None:
            self.actuator_configs = {}

    def workers_for(self, kind: str) -> int:
        workers = self.kind_concurrency.get(kind, self.max_concurrent_reconciles)
        return max(1, workers)


def _terminal_reason(error: Optional[BaseException]) -> str:
    if isinstance(error, TerminalError):
        return error.reason
    if isinstance(error, ValidationFailed):
        return REASON_INVALID_CONFIGURATION
    return REASON_UNRECOVERABLE_ERROR


class ReconcileController:
    """
    Drives objects of one kind towards their desired state.

    ``relations`` are the kind's outbound references (this kind is the
    Source). ``inbound_guards`` are guarded relations of other kinds that
    target this kind; they are swept when an object of this kind is deleted.
    """

    def __init__(
        self,
        store: ObjectStore,
        actuator: ResourceActuator,
        config: Optional[ControllerConfig] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.store = store
        self.actuator = actuator
        self.config = config or ControllerConfig()
        self.kind = actuator.kind
        self.finalizer = controller_finalizer(actuator.controller_name)
        self.relations: List[DependencyRelation] = list(actuator.relations)
        self.inbound_guards: List[DeletionGuardRelation] = []
        self.queue = queue or WorkQueue(
            self.kind,
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )

    @property
    def guarded_relations(self) -> List[DeletionGuardRelation]:
        return [r for r in self.relations if isinstance(r, DeletionGuardRelation)]

    # ==================== Reconcile ====================

    async def reconcile(self, key: ObjectKey) -> ProgressStatus:
        """
        Reconcile one object.

        Every exception except VersionConflict is converted into a
        ProgressStatus here and recorded on the object's conditions.

        Raises:
            VersionConflict: When a write lost a race; requeue immediately.
        """
        obj = await self.store.get(key)
        if obj is None:
            logger.debug(f"{key} no longer exists")
            return ProgressStatus.done()

        try:
            if obj.is_deleting:
                return await self._reconcile_delete(obj)
            return await self._reconcile_normal(obj)
        except VersionConflict:
            raise
        except Exception as e:
            status = classify_error(e)
            if not isinstance(e, (CloudError, TerminalError)):
                logger.error(
                    f"Unexpected error reconciling {key}: {e}", exc_info=True
                )
            await self._record_error(key, obj.generation, status)
            return status

    async def _reconcile_normal(self, obj: ManagedObject) -> ProgressStatus:
        key = obj.key
        generation = obj.generation

        if self.finalizer not in obj.finalizers:
            obj.finalizers.append(self.finalizer)
            set_condition(
                obj,
                CONDITION_PROGRESSING,
                CONDITION_TRUE,
                REASON_PROGRESSING,
                "Reconciliation started",
            )
            await self.store.patch(obj, obj.version)
            logger.info(f"Added finalizer {self.finalizer} to {key}")
            return ProgressStatus.needs_refresh()

        dependencies: Dict[str, List[ManagedObject]] = {}
        waiting: List[ProgressStatus] = []
        for relation in self.relations:
            ready, pending = await relation.resolve(self.store, obj)
            dependencies[relation.index_name] = ready
            waiting.extend(pending)

        if waiting:
            message = "; ".join(status.message for status in waiting)
            logger.info(f"{key} waiting for dependencies: {message}")
            await self._mark_waiting(key, generation, message)
            return combine(waiting)

        # Guard Targets before using them, so none can go away mid-reconcile
        current_refs: Dict[str, List[str]] = {}
        refused: List[ProgressStatus] = []
        for relation in self.guarded_relations:
            names = relation.references(obj)
            current_refs[relation.index_name] = names
            for name in await relation.add_guards(self.store, obj.namespace, names):
                refused.append(
                    ProgressStatus.waiting_for_dependency(
                        name, f"{relation.target_kind} {name} is gone or being deleted"
                    )
                )
        await self._record_guarded(key, current_refs)

        if refused:
            message = "; ".join(status.message for status in refused)
            logger.info(f"{key} waiting for dependencies: {message}")
            await self._mark_waiting(key, generation, message)
            return combine(refused)

        ctx = ActuatorContext(obj=obj, dependencies=dependencies)
        if obj.resource is not None:
            observed, statuses = await self._reconcile_resource(ctx)
        else:
            observed, statuses = await self._reconcile_import(ctx)
            if observed is None:
                wait = statuses[0]
                await self._mark_waiting(key, generation, wait.message)
                return wait

        available = self.actuator.is_available(observed)
        if not available:
            statuses.append(
                ProgressStatus.needs_refresh(
                    after=self.config.availability_poll_interval
                )
            )
        result = combine(statuses)

        previous_refs = obj.status.get("guardedReferences") or {}
        for relation in self.guarded_relations:
            current = set(current_refs.get(relation.index_name, []))
            dropped = [
                name
                for name in previous_refs.get(relation.index_name, [])
                if name not in current
            ]
            if dropped:
                await relation.release_guards(
                    self.store, obj.namespace, dropped, key
                )

        resource_id = self.actuator.resource_id(observed)
        resource_status = self.actuator.observed_status(observed)

        def mark_reconciled(current: ManagedObject) -> None:
            current.status["id"] = resource_id
            current.status["resource"] = resource_status
            current.status["observedGeneration"] = generation
            current.status["guardedReferences"] = current_refs
            if available:
                set_condition(
                    current,
                    CONDITION_AVAILABLE,
                    CONDITION_TRUE,
                    REASON_SUCCESS,
                    "OpenStack resource is available",
                    generation=generation,
                )
            else:
                set_condition(
                    current,
                    CONDITION_AVAILABLE,
                    CONDITION_FALSE,
                    REASON_PROGRESSING,
                    "Waiting for OpenStack resource to become available",
                    generation=generation,
                )
            if result.is_done:
                set_condition(
                    current,
                    CONDITION_PROGRESSING,
                    CONDITION_FALSE,
                    REASON_SUCCESS,
                    "Reconciliation complete",
                    generation=generation,
                )
            else:
                set_condition(
                    current,
                    CONDITION_PROGRESSING,
                    CONDITION_TRUE,
                    REASON_PROGRESSING,
                    result.message or "Reconciliation in progress",
                    generation=generation,
                )

        await self._write_status(key, mark_reconciled)
        return result

    async def _reconcile_resource(
        self, ctx: ActuatorContext
    ) -> Tuple[Dict[str, Any], List[ProgressStatus]]:
        """Create-or-adopt the resource, then converge its mutable fields."""
        obj = ctx.obj
        resource_id = obj.external_id

        if resource_id:
            observed = await self.actuator.get_by_id(ctx, resource_id)
            if observed is None:
                raise TerminalError(
                    f"{self.kind} {resource_id} has been deleted externally",
                    reason=REASON_UNRECOVERABLE_ERROR,
                )
        else:
            observed = await self.actuator.find(ctx)
            if observed is None:
                observed = await self.actuator.create(ctx)
                logger.info(
                    f"Created {self.kind} {self.actuator.resource_id(observed)} "
                    f"for {obj.key}"
                )
                return observed, [ProgressStatus.needs_refresh()]
            logger.info(
                f"Adopted existing {self.kind} "
                f"{self.actuator.resource_id(observed)} for {obj.key}"
            )

        statuses = await self.actuator.update(ctx, observed)
        return observed, list(statuses)

    async def _reconcile_import(
        self, ctx: ActuatorContext
    ) -> Tuple[Optional[Dict[str, Any]], List[ProgressStatus]]:
        """Locate a pre-existing resource. Imports are never modified."""
        obj = ctx.obj
        import_spec = obj.import_ or {}
        import_id = obj.external_id or import_spec.get("id")

        if import_id:
            observed = await self.actuator.get_by_id(ctx, import_id)
            missing = f"{self.kind} {import_id} does not exist"
        else:
            observed = await self.actuator.find(ctx)
            missing = f"no {self.kind} matches the import filter"

        if observed is None:
            return None, [
                ProgressStatus.waiting_for_dependency(
                    "import",
                    missing,
                    requeue_after=self.config.import_poll_interval,
                )
            ]
        return observed, []

    async def _reconcile_delete(self, obj: ManagedObject) -> ProgressStatus:
        key = obj.key

        for relation in self.inbound_guards:
            await relation.sweep(self.store, obj)

        obj = await self.store.get(key)
        if obj is None:
            return ProgressStatus.done()

        tokens = guard_tokens(obj)
        if tokens:
            dependents = await self._dependents(obj, tokens)
            blockers = ", ".join(dependents or tokens)
            message = f"Waiting for dependents to be deleted: {blockers}"
            logger.info(f"{key} deletion blocked. {message}")

            def mark_guarded(current: ManagedObject) -> None:
                set_condition(
                    current,
                    CONDITION_PROGRESSING,
                    CONDITION_TRUE,
                    REASON_DELETING,
                    message,
                )

            await self._write_status(key, mark_guarded)
            return ProgressStatus.waiting_for_dependency(
                blockers, "GuardedByDependents"
            )

        if self.finalizer not in obj.finalizers:
            return ProgressStatus.done()

        if obj.resource is not None:
            await self._delete_external(obj)

        guarded_refs = obj.status.get("guardedReferences") or {}
        for relation in self.guarded_relations:
            names = set(relation.references(obj))
            names.update(guarded_refs.get(relation.index_name, []))
            await relation.release_guards(
                self.store, obj.namespace, sorted(names), key
            )

        def remove_finalizer(current: ManagedObject) -> bool:
            if self.finalizer not in current.finalizers:
                return False
            current.finalizers.remove(self.finalizer)
            return True

        await update_with_retry(self.store, key, remove_finalizer)
        logger.info(f"Removed finalizer {self.finalizer} from {key}")
        return ProgressStatus.done()

    async def _delete_external(self, obj: ManagedObject) -> None:
        ctx = ActuatorContext(obj=obj)
        resource_id = obj.external_id
        if not resource_id:
            observed = await self.actuator.find(ctx)
            if observed is None:
                logger.info(f"No {self.kind} to delete for {obj.key}")
                return
            resource_id = self.actuator.resource_id(observed)

        try:
            await self.actuator.delete(ctx, resource_id)
            logger.info(f"Deleted {self.kind} {resource_id} for {obj.key}")
        except NotFound:
            logger.info(f"{self.kind} {resource_id} for {obj.key} was already gone")

    async def _dependents(self, obj: ManagedObject, tokens: List[str]) -> List[str]:
        names: List[str] = []
        for relation in self.inbound_guards:
            if relation.finalizer not in tokens:
                continue
            for source in await relation.referencing(
                self.store, obj.namespace, obj.name
            ):
                label = f"{source.kind}/{source.name}"
                if label not in names:
                    names.append(label)
        return names

    # ==================== Status ====================

    async def _write_status(
        self, key: ObjectKey, update: Callable[[ManagedObject], None]
    ) -> None:
        """Apply a status change to the current object, retrying conflicts."""

        def mutate(current: ManagedObject) -> bool:
            before = copy.deepcopy(current.status)
            update(current)
            return current.status != before

        await update_with_retry(self.store, key, mutate)

    async def _mark_waiting(
        self, key: ObjectKey, generation: int, message: str
    ) -> None:
        def mark_waiting(current: ManagedObject) -> None:
            set_condition(
                current,
                CONDITION_AVAILABLE,
                CONDITION_FALSE,
                REASON_WAITING,
                message,
                generation=generation,
            )
            set_condition(
                current,
                CONDITION_PROGRESSING,
                CONDITION_TRUE,
                REASON_WAITING,
                message,
                generation=generation,
            )

        await self._write_status(key, mark_waiting)

    async def _record_guarded(
        self, key: ObjectKey, current_refs: Dict[str, List[str]]
    ) -> None:
        """
        Add the references just guarded to ``status.guardedReferences``.

        Written before any external call and kept through failures, so every
        Target this object ever guarded is released once it stops
        referencing it, whether or not a reconcile has succeeded since.
        """
        if not current_refs:
            return

        def record(current: ManagedObject) -> None:
            recorded = current.status.get("guardedReferences") or {}
            merged: Dict[str, List[str]] = {}
            for index_name in set(recorded) | set(current_refs):
                names = list(recorded.get(index_name, []))
                for name in current_refs.get(index_name, []):
                    if name not in names:
                        names.append(name)
                merged[index_name] = names
            current.status["guardedReferences"] = merged

        await self._write_status(key, record)

    async def _record_error(
        self, key: ObjectKey, generation: int, status: ProgressStatus
    ) -> None:
        message = status.message

        def mark_error(current: ManagedObject) -> None:
            if status.kind == ProgressKind.TERMINAL_ERROR:
                reason = _terminal_reason(status.error)
                set_condition(
                    current,
                    CONDITION_PROGRESSING,
                    CONDITION_FALSE,
                    reason,
                    message,
                    generation=generation,
                )
            else:
                reason = REASON_TRANSIENT_ERROR
                set_condition(
                    current,
                    CONDITION_PROGRESSING,
                    CONDITION_TRUE,
                    reason,
                    message,
                    generation=generation,
                )
            if not current.external_id or status.kind == ProgressKind.TERMINAL_ERROR:
                set_condition(
                    current,
                    CONDITION_AVAILABLE,
                    CONDITION_FALSE,
                    reason,
                    message,
                    generation=generation,
                )

        await self._write_status(key, mark_error)

    # ==================== Queue handling ====================

    async def process(self, key: ObjectKey) -> ProgressStatus:
        """Reconcile one key under the timeout and requeue it by outcome."""
        start_time = time.monotonic()
        try:
            status = await asyncio.wait_for(
                self.reconcile(key), timeout=self.config.reconcile_timeout
            )
        except VersionConflict as e:
            logger.debug(f"Version conflict reconciling {key}, requeueing: {e}")
            self.queue.add(key)
            return ProgressStatus.needs_refresh()
        except asyncio.TimeoutError:
            status = ProgressStatus.transient_error(
                asyncio.TimeoutError(
                    f"reconcile timed out after {self.config.reconcile_timeout}s"
                )
            )

        self.handle_result(key, status)
        logger.debug(
            f"Reconciled {key} in {time.monotonic() - start_time:.3f}s: "
            f"{status.kind.name}"
        )
        return status

    def handle_result(self, key: ObjectKey, status: ProgressStatus) -> None:
        """Requeue ``key`` according to the outcome of its reconcile."""
        if status.kind == ProgressKind.TRANSIENT_ERROR:
            delay = self.queue.add_rate_limited(key)
            failures = self.queue.num_requeues(key)
            log = (
                logger.warning
                if failures >= self.config.transient_error_threshold
                else logger.debug
            )
            log(
                f"Transient error reconciling {key} (attempt {failures}), "
                f"retrying in {delay:.1f}s: {status.message}"
            )
            return

        self.queue.forget(key)

        if status.kind == ProgressKind.TERMINAL_ERROR:
            logger.error(f"Terminal error reconciling {key}: {status.message}")
            return

        if status.kind == ProgressKind.NEEDS_REFRESH and not status.requeue_after:
            self.queue.add(key)
        elif status.requeue_after:
            self.queue.add_after(key, status.requeue_after)

    async def run_worker(self, worker_id: int) -> None:
        """Drain the queue until it is shut down."""
        logger.debug(f"{self.kind} worker {worker_id} started")
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                break
            try:
                await self.process(key)
            except Exception as e:
                logger.error(f"Error processing {key}: {e}", exc_info=True)
                self.queue.add_rate_limited(key)
            finally:
                self.queue.done(key)
        logger.debug(f"{self.kind} worker {worker_id} stopped")


class Controller:
    """
    Manager that runs one ReconcileController per enabled kind.

    Registers every kind's relations with the store, wires the watch event
    router to the per-kind work queues, and runs the workers plus a
    periodic resync.
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or ControllerConfig()
        self.router = WatchEventRouter(store)
        self.reconcilers: Dict[str, ReconcileController] = {}
        self.running = False
        self._configured = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def add_actuator(self, actuator: ResourceActuator) -> ReconcileController:
        """Manage ``actuator``'s kind. Must be called before :meth:`setup`."""
        if actuator.kind in self.reconcilers:
            raise ValueError(f"Kind {actuator.kind} is already managed")
        reconciler = ReconcileController(self.store, actuator, self.config)
        self.reconcilers[actuator.kind] = reconciler
        return reconciler

    async def _load_actuators(self) -> None:
        if self.registry is None:
            return
        enabled = self.config.enabled_kinds
        for kind in self.registry.list_actuators():
            if kind in self.reconcilers or (enabled and kind not in enabled):
                continue
            actuator = await self.registry.get_actuator(
                kind, self.config.actuator_configs.get(kind)
            )
            self.add_actuator(actuator)

    async def setup(self) -> None:
        """
        Load actuators and register relations and watch handlers.

        Raises:
            RelationSetupError: If any relation failed to register.
        """
        if self._configured:
            return
        await self._load_actuators()

        relations = [
            relation
            for reconciler in self.reconcilers.values()
            for relation in reconciler.relations
        ]
        register_relations(self.store, relations)

        for kind, reconciler in self.reconcilers.items():
            self.router.add_handler(
                kind, f"{kind}:self", self._own_kind_handler(reconciler.queue)
            )

        for relation in relations:
            source = self.reconcilers[relation.source_kind]
            handler_kind = "guarded" if relation.guarded else "import"
            self.router.add_handler(
                relation.target_kind,
                f"{relation.source_kind}:{relation.index_name}:{handler_kind}",
                relation.watch_event_handler(self.store, source.queue.add),
            )

            if not isinstance(relation, DeletionGuardRelation):
                continue
            target = self.reconcilers.get(relation.target_kind)
            if target is None:
                continue
            target.inbound_guards.append(relation)
            self.router.add_handler(
                relation.source_kind,
                f"{relation.target_kind}:{relation.index_name}:release",
                relation.guard_release_handler(target.queue.add),
            )

        self._configured = True
        kinds = ", ".join(sorted(self.reconcilers)) or "none"
        logger.info(f"Managing kinds: {kinds}")

    @staticmethod
    def _own_kind_handler(queue: WorkQueue):
        async def handler(event: WatchEvent) -> int:
            if not spec_or_lifecycle_changed(event):
                return 0
            if event.event_type == EventType.DELETED:
                queue.forget(event.obj.key)
            queue.add(event.obj.key)
            return 1

        return handler

    async def start(self):
        """Start the watches, the workers and the resync loop."""
        logger.info("Starting reconcile controller")
        await self.setup()
        self.running = True
        self._shutdown_event.clear()

        await self.router.start()
        await self.resync()

        for kind, reconciler in self.reconcilers.items():
            workers = self.config.workers_for(kind)
            for worker_id in range(workers):
                self._tasks.append(
                    asyncio.create_task(reconciler.run_worker(worker_id))
                )
            logger.info(f"Started {workers} worker(s) for {kind}")

        self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping reconcile controller")
        self.running = False
        self._shutdown_event.set()

        await self.router.stop()
        for reconciler in self.reconcilers.values():
            reconciler.queue.shut_down()
            try:
                await reconciler.actuator.close()
            except Exception as e:
                logger.error(f"Error closing {reconciler.kind} actuator: {e}")

    async def _resync_loop(self):
        """Periodically resync as a backstop against missed events."""
        while self.running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.resync_interval
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

    async def resync(self) -> int:
        """
        Catch the change feed up with the store and enqueue every object
        that may still need work.

        Terminal objects at their failed generation are skipped.

        Returns:
            Number of objects enqueued.
        """
        await self.store.resync()
        enqueued = 0
        for kind, reconciler in self.reconcilers.items():
            for obj in await self.store.list(kind=kind):
                if is_terminal(obj) and not obj.is_deleting:
                    continue
                reconciler.queue.add(obj.key)
                enqueued += 1
        logger.debug(f"Resync enqueued {enqueued} objects")
        return enqueued

    def trigger_reconciliation(self, key: ObjectKey) -> None:
        """Manually trigger reconciliation for a specific object."""
        reconciler = self.reconcilers.get(key.kind)
        if reconciler is None:
            raise ValueError(f"Kind {key.kind} is not managed")
        logger.info(f"Manually triggering reconciliation for {key}")
        reconciler.queue.add(key)
