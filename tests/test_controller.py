"""Unit tests for controller.py - Per-kind reconcile controllers."""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from controller import Controller, ControllerConfig, _terminal_reason
from dependency import add_guard_record
from events import EventType, WatchEvent
from fakes import NETWORK_REF, FakeNetworkActuator, FakeSubnetActuator
from objects import (
    CONDITION_AVAILABLE,
    CONDITION_PROGRESSING,
    ManagedObject,
    ObjectKey,
    get_condition,
    is_available,
    is_terminal,
)
from plugins.actuators.openstack.base import guard_finalizer
from progress import (
    ProgressKind,
    ProgressStatus,
    ServiceUnavailable,
    TerminalError,
    ValidationFailed,
)
from store import VersionConflict, update_with_retry

NET = ObjectKey("Network", "default", "net")
SUB = ObjectKey("Subnet", "default", "sub")
SUBNET_GUARD = guard_finalizer("Subnet")


async def build_controller(store, cloud, **config):
    controller = Controller(store, config=ControllerConfig(**config))
    controller.add_actuator(FakeNetworkActuator(cloud))
    controller.add_actuator(FakeSubnetActuator(cloud))
    await controller.setup()
    return controller


async def drive(reconciler, key, max_rounds=6):
    """Reconcile until the outcome asks for anything but an immediate refresh."""
    status = None
    for _ in range(max_rounds):
        status = await reconciler.reconcile(key)
        if status.kind != ProgressKind.NEEDS_REFRESH:
            return status
    return status


def condition(obj, condition_type):
    return get_condition(obj, condition_type) or {}


class TestControllerConfig:
    """Tests for ControllerConfig dataclass."""

    def test_default_values(self):
        config = ControllerConfig()
        assert config.resync_interval == 600
        assert config.max_concurrent_reconciles == 5
        assert config.kind_concurrency == {}
        assert config.actuator_configs == {}
        assert config.backoff_base_delay == 1.0
        assert config.backoff_max_delay == 300.0
        assert config.import_poll_interval == 60.0

    def test_workers_for(self):
        """Test per-kind concurrency overrides the global default."""
        config = ControllerConfig(
            max_concurrent_reconciles=4, kind_concurrency={"Port": 8, "Project": 0}
        )
        assert config.workers_for("Port") == 8
        assert config.workers_for("Network") == 4
        assert config.workers_for("Project") == 1


class TestTerminalReason:
    def test_reasons(self):
        assert _terminal_reason(TerminalError("bad")) == "InvalidConfiguration"
        assert (
            _terminal_reason(TerminalError("gone", reason="UnrecoverableError"))
            == "UnrecoverableError"
        )
        assert _terminal_reason(ValidationFailed("bad", 400)) == "InvalidConfiguration"
        assert _terminal_reason(RuntimeError("?")) == "UnrecoverableError"


@pytest.mark.asyncio
class TestSetup:
    """Tests for relation and watch handler wiring."""

    async def test_handlers_registered(self, store, cloud):
        controller = await build_controller(store, cloud)

        assert controller.router.handler_names("Network") == [
            "Network:self",
            "Subnet:spec.resource.networkRef:guarded",
            "Subnet:spec.import.filter.networkRef:import",
        ]
        assert controller.router.handler_names("Subnet") == [
            "Subnet:self",
            "Network:spec.resource.networkRef:release",
        ]
        network = controller.reconcilers["Network"]
        assert [r.index_name for r in network.inbound_guards] == [NETWORK_REF]
        assert store.has_index("Subnet", NETWORK_REF)

    async def test_duplicate_kind_rejected(self, store, cloud):
        controller = Controller(store)
        controller.add_actuator(FakeNetworkActuator(cloud))
        with pytest.raises(ValueError, match="already managed"):
            controller.add_actuator(FakeNetworkActuator(cloud))

    async def test_setup_is_idempotent(self, store, cloud):
        controller = await build_controller(store, cloud)
        await controller.setup()
        assert len(controller.router.handler_names("Network")) == 3


@pytest.mark.asyncio
class TestReconcileResource:
    """Tests for creating and converging managed resources."""

    async def test_create_network(self, store, cloud, make_object):
        """Test a new object gets a finalizer, a resource and a ready status."""
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.is_done
        obj = await store.get(NET)
        assert "openstack.orc.io/network" in obj.finalizers
        assert obj.status["id"] == "network-1"
        assert obj.status["observedGeneration"] == 1
        assert condition(obj, CONDITION_AVAILABLE)["status"] == "True"
        progressing = condition(obj, CONDITION_PROGRESSING)
        assert progressing["status"] == "False"
        assert progressing["reason"] == "Success"
        assert cloud.calls == [
            ("create", "Network", {"name": "net", "description": None})
        ]

    async def test_finalizer_added_first(self, store, cloud, make_object):
        """Test the first pass only adds the finalizer and asks for a refresh."""
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))

        status = await controller.reconcilers["Network"].reconcile(NET)

        assert status.kind == ProgressKind.NEEDS_REFRESH
        obj = await store.get(NET)
        assert obj.finalizers == ["openstack.orc.io/network"]
        assert condition(obj, CONDITION_PROGRESSING)["status"] == "True"
        assert cloud.calls == []

    async def test_adopts_existing_resource(self, store, cloud, make_object):
        """Test a resource left by an interrupted create is adopted."""
        existing = cloud.add("Network", name="net")
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.is_done
        obj = await store.get(NET)
        assert obj.status["id"] == existing["id"]
        assert cloud.calls == []

    async def test_waits_for_availability(self, store, cloud, make_object):
        """Test a resource that is still building is polled."""
        network = FakeNetworkActuator(cloud)
        network.create_status = "BUILD"
        controller = Controller(
            store, config=ControllerConfig(availability_poll_interval=7.0)
        )
        controller.add_actuator(network)
        await controller.setup()
        await store.create(make_object("Network", "net"))

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.kind == ProgressKind.NEEDS_REFRESH
        assert status.requeue_after == 7.0
        obj = await store.get(NET)
        assert condition(obj, CONDITION_AVAILABLE)["status"] == "False"
        assert condition(obj, CONDITION_PROGRESSING)["status"] == "True"

    async def test_spec_change_updates_resource(self, store, cloud, make_object):
        """Test a new generation is converged and observed."""
        controller = await build_controller(store, cloud)
        created = await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)

        current = await store.get(NET)
        current.spec = {"resource": {"description": "updated"}}
        await store.update_spec(current, current.version)
        status = await drive(controller.reconcilers["Network"], NET)

        assert status.is_done
        assert ("update", "Network", "network-1", "updated") in cloud.calls
        obj = await store.get(NET)
        assert obj.generation == created.generation + 1
        assert obj.status["observedGeneration"] == 2
        assert condition(obj, CONDITION_AVAILABLE)["observedGeneration"] == 2

    async def test_missing_object_is_done(self, store, cloud):
        controller = await build_controller(store, cloud)
        status = await controller.reconcilers["Network"].reconcile(NET)
        assert status.is_done


@pytest.mark.asyncio
class TestDependencies:
    """Tests for waiting on, guarding and releasing referenced objects."""

    async def test_waits_for_missing_dependency(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        await store.create(make_object("Subnet", "sub", networkRef="net"))

        status = await drive(controller.reconcilers["Subnet"], SUB)

        assert status.is_waiting
        assert status.dependency == "net"
        obj = await store.get(SUB)
        available = condition(obj, CONDITION_AVAILABLE)
        assert available["status"] == "False"
        assert available["reason"] == "WaitingForDependency"
        assert "does not exist" in available["message"]
        assert cloud.of_kind("Subnet") == []

    async def test_proceeds_once_dependency_available(
        self, store, cloud, make_object
    ):
        """Test the Subnet is created on the Network and guards it."""
        controller = await build_controller(store, cloud)
        await store.create(make_object("Subnet", "sub", networkRef="net"))
        await drive(controller.reconcilers["Subnet"], SUB)

        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        status = await drive(controller.reconcilers["Subnet"], SUB)

        assert status.is_done
        network = await store.get(NET)
        subnet = await store.get(SUB)
        assert (
            "create",
            "Subnet",
            {"name": "sub", "description": None, "network_id": network.external_id},
        ) in cloud.calls
        assert network.guards == {SUBNET_GUARD: ["subnet/networkRef"]}
        assert SUBNET_GUARD in network.finalizers
        assert subnet.status["guardedReferences"] == {NETWORK_REF: ["net"]}
        assert is_available(subnet)

    async def test_deleting_dependency_is_not_ready(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        await store.request_deletion(NET)

        await store.create(make_object("Subnet", "sub", networkRef="net"))
        status = await drive(controller.reconcilers["Subnet"], SUB)

        assert status.is_waiting
        assert "is being deleted" in status.message

    async def test_dependency_available_wakes_dependents(
        self, store, cloud, make_object
    ):
        """Test an Available transition enqueues referencing Subnets."""
        controller = await build_controller(store, cloud)
        await store.create(make_object("Subnet", "sub", networkRef="net"))
        before = await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        after = await store.get(NET)

        enqueued = await controller.router.dispatch(
            WatchEvent(EventType.MODIFIED, obj=after, old_obj=before)
        )

        assert enqueued == 1
        subnets = controller.reconcilers["Subnet"].queue
        assert len(subnets) == 1
        assert await subnets.get() == SUB

    async def test_dropped_reference_releases_guard(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        for name in ("net-a", "net-b"):
            await store.create(make_object("Network", name))
            await drive(
                controller.reconcilers["Network"],
                ObjectKey("Network", "default", name),
            )
        await store.create(make_object("Subnet", "sub", networkRef="net-a"))
        await drive(controller.reconcilers["Subnet"], SUB)

        subnet = await store.get(SUB)
        subnet.spec = {"resource": {"networkRef": "net-b"}}
        await store.update_spec(subnet, subnet.version)
        status = await drive(controller.reconcilers["Subnet"], SUB)

        assert status.is_done
        net_a = await store.get(ObjectKey("Network", "default", "net-a"))
        net_b = await store.get(ObjectKey("Network", "default", "net-b"))
        assert net_a.guards == {}
        assert SUBNET_GUARD not in net_a.finalizers
        assert net_b.guards == {SUBNET_GUARD: ["subnet/networkRef"]}
        subnet = await store.get(SUB)
        assert subnet.status["guardedReferences"] == {NETWORK_REF: ["net-b"]}

    async def test_reference_dropped_after_failed_reconcile_is_released(
        self, store, cloud, make_object
    ):
        """Test a guard placed by a failed reconcile is released on repoint."""
        controller = await build_controller(store, cloud)
        for name in ("net-a", "net-b"):
            await store.create(make_object("Network", name))
            await drive(
                controller.reconcilers["Network"],
                ObjectKey("Network", "default", name),
            )
        subnets = controller.reconcilers["Subnet"]
        subnets.actuator.failures["create"] = [ValidationFailed("bad cidr", 400)]
        await store.create(make_object("Subnet", "sub", networkRef="net-a"))

        status = await drive(subnets, SUB)

        assert status.kind == ProgressKind.TERMINAL_ERROR
        subnet = await store.get(SUB)
        assert subnet.status["guardedReferences"] == {NETWORK_REF: ["net-a"]}

        subnet.spec = {"resource": {"networkRef": "net-b"}}
        await store.update_spec(subnet, subnet.version)
        assert (await drive(subnets, SUB)).is_done

        net_a = await store.get(ObjectKey("Network", "default", "net-a"))
        assert net_a.guards == {}
        assert SUBNET_GUARD not in net_a.finalizers
        subnet = await store.get(SUB)
        assert subnet.status["guardedReferences"] == {NETWORK_REF: ["net-b"]}


@pytest.mark.asyncio
class TestDeletion:
    """Tests for deletion, deletion guards and their release."""

    async def _network_with_subnet(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        await store.create(make_object("Subnet", "sub", networkRef="net"))
        await drive(controller.reconcilers["Subnet"], SUB)
        return controller

    async def test_guarded_network_waits_for_subnet(self, store, cloud, make_object):
        controller = await self._network_with_subnet(store, cloud, make_object)
        await store.request_deletion(NET)

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.is_waiting
        assert status.reason == "GuardedByDependents"
        assert status.dependency == "Subnet/sub"
        network = await store.get(NET)
        assert network is not None
        progressing = condition(network, CONDITION_PROGRESSING)
        assert progressing["reason"] == "Deleting"
        assert "Subnet/sub" in progressing["message"]
        assert cloud.of_kind("Network") != []

    async def test_deleting_dependent_unblocks_network(
        self, store, cloud, make_object
    ):
        controller = await self._network_with_subnet(store, cloud, make_object)
        await store.request_deletion(NET)
        await drive(controller.reconcilers["Network"], NET)

        await store.request_deletion(SUB)
        assert (await drive(controller.reconcilers["Subnet"], SUB)).is_done
        assert await store.get(SUB) is None

        network = await store.get(NET)
        assert network.guards == {}
        assert network.finalizers == ["openstack.orc.io/network"]

        assert (await drive(controller.reconcilers["Network"], NET)).is_done
        assert await store.get(NET) is None
        assert cloud.resources == {}
        deletes = [call for call in cloud.calls if call[0] == "delete"]
        assert [call[1] for call in deletes] == ["Subnet", "Network"]

    async def test_subnet_deletion_wakes_network(self, store, cloud, make_object):
        """Test a purged Subnet enqueues the Network it referenced."""
        controller = await self._network_with_subnet(store, cloud, make_object)
        subnet = await store.get(SUB)

        enqueued = await controller.router.dispatch(
            WatchEvent(EventType.DELETED, obj=subnet, old_obj=subnet)
        )

        assert enqueued >= 1
        assert await controller.reconcilers["Network"].queue.get() == NET

    async def test_sweep_releases_orphaned_guard(self, store, cloud, make_object):
        """Test a guard nobody backs is released when its Target is deleted."""
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        await update_with_retry(
            store,
            NET,
            lambda obj: add_guard_record(obj, SUBNET_GUARD, "subnet/networkRef"),
        )
        await store.request_deletion(NET)

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.is_done
        assert await store.get(NET) is None

    async def test_already_deleted_externally(self, store, cloud, make_object):
        """Test NotFound on delete still lets the object go."""
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        cloud.resources.clear()
        await store.request_deletion(NET)

        assert (await drive(controller.reconcilers["Network"], NET)).is_done
        assert await store.get(NET) is None

    async def test_release_racing_new_reference_blocks_delete(
        self, store, cloud, make_object
    ):
        """
        Test a Subnet dropping the Network while another Subnet starts
        using it leaves the Network guarded, and never deleted.
        """
        controller = await build_controller(store, cloud)
        for name in ("net", "other"):
            await store.create(make_object("Network", name))
            await drive(
                controller.reconcilers["Network"],
                ObjectKey("Network", "default", name),
            )
        subnets = controller.reconcilers["Subnet"]
        first = ObjectKey("Subnet", "default", "a")
        second = ObjectKey("Subnet", "default", "b")
        await store.create(make_object("Subnet", "a", networkRef="net"))
        await store.create(make_object("Subnet", "b", networkRef="other"))
        await drive(subnets, first)
        await drive(subnets, second)

        subnet = await store.get(first)
        subnet.spec = {"resource": {"networkRef": "other"}}
        await store.update_spec(subnet, subnet.version)

        listed = asyncio.Event()
        resume = asyncio.Event()
        real_list = store.list

        async def paused_list(kind=None, namespace=None):
            result = await real_list(kind=kind, namespace=namespace)
            if kind == "Subnet" and not listed.is_set():
                listed.set()
                await resume.wait()
            return result

        with patch.object(store, "list", side_effect=paused_list):
            releasing = asyncio.create_task(drive(subnets, first))
            await listed.wait()

            subnet = await store.get(second)
            subnet.spec = {"resource": {"networkRef": "net"}}
            await store.update_spec(subnet, subnet.version)
            assert (await drive(subnets, second)).is_done

            resume.set()
            assert (await releasing).is_done

        network = await store.get(NET)
        assert network.guards == {SUBNET_GUARD: ["subnet/networkRef"]}

        await store.request_deletion(NET)
        status = await drive(controller.reconcilers["Network"], NET)

        assert status.is_waiting
        assert status.dependency == "Subnet/b"
        assert [call for call in cloud.calls if call[0] == "delete"] == []

    async def test_delete_without_finalizer_is_immediate(
        self, store, cloud, make_object
    ):
        await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))
        await store.request_deletion(NET)
        assert await store.get(NET) is None


@pytest.mark.asyncio
class TestImport:
    """Tests for import specs."""

    async def _import(self, store, **flt):
        return await store.create(
            ManagedObject(
                kind="Network",
                namespace="default",
                name="ext",
                spec={"import": {"filter": flt}},
            )
        )

    async def test_import_waits_for_match(self, store, cloud):
        controller = await build_controller(store, cloud, import_poll_interval=30.0)
        obj = await self._import(store, name="public")

        status = await drive(controller.reconcilers["Network"], obj.key)

        assert status.is_waiting
        assert status.requeue_after == 30.0
        obj = await store.get(obj.key)
        available = condition(obj, CONDITION_AVAILABLE)
        assert available["reason"] == "WaitingForDependency"
        assert "no Network matches the import filter" in available["message"]

    async def test_import_adopts_match_and_never_deletes(self, store, cloud):
        controller = await build_controller(store, cloud)
        obj = await self._import(store, name="public")
        await drive(controller.reconcilers["Network"], obj.key)
        existing = cloud.add("Network", name="public")

        status = await drive(controller.reconcilers["Network"], obj.key)

        assert status.is_done
        imported = await store.get(obj.key)
        assert imported.status["id"] == existing["id"]
        assert is_available(imported)

        await store.request_deletion(obj.key)
        assert (await drive(controller.reconcilers["Network"], obj.key)).is_done
        assert await store.get(obj.key) is None
        assert existing["id"] in cloud.resources
        assert cloud.calls == []

    async def test_import_by_id(self, store, cloud):
        controller = await build_controller(store, cloud)
        existing = cloud.add("Network", name="anything")
        obj = await store.create(
            ManagedObject(
                kind="Network",
                namespace="default",
                name="by-id",
                spec={"import": {"id": existing["id"]}},
            )
        )

        assert (await drive(controller.reconcilers["Network"], obj.key)).is_done
        assert (await store.get(obj.key)).status["id"] == existing["id"]


@pytest.mark.asyncio
class TestErrors:
    """Tests for transient and terminal error handling."""

    async def test_transient_error(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        actuator = controller.reconcilers["Network"].actuator
        actuator.failures["create"] = [ServiceUnavailable("neutron is down", 503)]
        await store.create(make_object("Network", "net"))

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.kind == ProgressKind.TRANSIENT_ERROR
        obj = await store.get(NET)
        progressing = condition(obj, CONDITION_PROGRESSING)
        assert progressing["status"] == "True"
        assert progressing["reason"] == "TransientError"
        assert "neutron is down" in progressing["message"]
        assert condition(obj, CONDITION_AVAILABLE)["status"] == "False"
        assert not is_terminal(obj)

    async def test_terminal_error(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        actuator = controller.reconcilers["Network"].actuator
        actuator.failures["create"] = [TerminalError("mtu is out of range")]
        await store.create(make_object("Network", "net"))

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.kind == ProgressKind.TERMINAL_ERROR
        obj = await store.get(NET)
        progressing = condition(obj, CONDITION_PROGRESSING)
        assert progressing["status"] == "False"
        assert progressing["reason"] == "InvalidConfiguration"
        assert is_terminal(obj)

    async def test_validation_failure_is_invalid_configuration(
        self, store, cloud, make_object
    ):
        controller = await build_controller(store, cloud)
        actuator = controller.reconcilers["Network"].actuator
        actuator.failures["create"] = [ValidationFailed("bad request", 400)]
        await store.create(make_object("Network", "net"))

        await drive(controller.reconcilers["Network"], NET)

        obj = await store.get(NET)
        assert condition(obj, CONDITION_PROGRESSING)["reason"] == (
            "InvalidConfiguration"
        )

    async def test_terminal_cleared_by_spec_change(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        actuator = controller.reconcilers["Network"].actuator
        actuator.failures["create"] = [TerminalError("bad")]
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)

        obj = await store.get(NET)
        obj.spec = {"resource": {"description": "fixed"}}
        obj = await store.update_spec(obj, obj.version)

        assert not is_terminal(obj)
        assert (await drive(controller.reconcilers["Network"], NET)).is_done

    async def test_resource_deleted_externally(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        cloud.resources.clear()

        status = await drive(controller.reconcilers["Network"], NET)

        assert status.kind == ProgressKind.TERMINAL_ERROR
        obj = await store.get(NET)
        assert condition(obj, CONDITION_PROGRESSING)["reason"] == "UnrecoverableError"
        assert condition(obj, CONDITION_AVAILABLE)["status"] == "False"
        assert cloud.calls == [
            ("create", "Network", {"name": "net", "description": None})
        ]

    async def test_resync_skips_terminal_objects(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        actuator = controller.reconcilers["Network"].actuator
        actuator.failures["create"] = [TerminalError("bad")]
        await store.create(make_object("Network", "net"))
        await drive(controller.reconcilers["Network"], NET)
        await store.create(make_object("Network", "other"))

        assert await controller.resync() == 1


@pytest.mark.asyncio
class TestProcess:
    """Tests for requeueing by outcome."""

    async def test_transient_error_backs_off(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        reconciler = controller.reconcilers["Network"]
        await store.create(make_object("Network", "net"))
        await reconciler.reconcile(NET)
        reconciler.actuator.failures["create"] = [ServiceUnavailable("down", 503)]

        status = await reconciler.process(NET)

        assert status.kind == ProgressKind.TRANSIENT_ERROR
        assert reconciler.queue.num_requeues(NET) == 1
        assert len(reconciler.queue) == 0
        assert reconciler.queue.pending_delay(NET) is not None
        reconciler.queue.shut_down()

    async def test_success_forgets_backoff(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        reconciler = controller.reconcilers["Network"]
        await store.create(make_object("Network", "net"))
        reconciler.queue.add_rate_limited(NET)
        reconciler.queue.shut_down()

        reconciler.handle_result(NET, ProgressStatus.done())

        assert reconciler.queue.num_requeues(NET) == 0

    async def test_terminal_error_is_not_requeued(self, store, cloud):
        controller = await build_controller(store, cloud)
        reconciler = controller.reconcilers["Network"]

        reconciler.handle_result(
            NET, ProgressStatus.terminal_error(TerminalError("bad"))
        )

        assert len(reconciler.queue) == 0
        assert reconciler.queue.pending_delay(NET) is None
        assert reconciler.queue.num_requeues(NET) == 0

    async def test_needs_refresh_requeues(self, store, cloud):
        controller = await build_controller(store, cloud)
        reconciler = controller.reconcilers["Network"]

        reconciler.handle_result(NET, ProgressStatus.needs_refresh())
        assert len(reconciler.queue) == 1

        other = ObjectKey("Network", "default", "later")
        reconciler.handle_result(other, ProgressStatus.needs_refresh(after=10.0))
        assert 9.0 < reconciler.queue.pending_delay(other) <= 10.0

        waiting = ObjectKey("Network", "default", "import")
        reconciler.handle_result(
            waiting,
            ProgressStatus.waiting_for_dependency("import", "none", requeue_after=60),
        )
        assert reconciler.queue.pending_delay(waiting) is not None
        reconciler.queue.shut_down()

    async def test_version_conflict_requeues_immediately(self, store, cloud):
        controller = await build_controller(store, cloud)
        reconciler = controller.reconcilers["Network"]
        reconciler.reconcile = AsyncMock(side_effect=VersionConflict("raced"))

        await reconciler.process(NET)

        assert len(reconciler.queue) == 1
        assert reconciler.queue.num_requeues(NET) == 0

    async def test_timeout_is_transient(self, store, cloud):
        controller = await build_controller(store, cloud, reconcile_timeout=0.01)
        reconciler = controller.reconcilers["Network"]

        async def slow(key):
            await asyncio.sleep(1)

        reconciler.reconcile = slow

        status = await reconciler.process(NET)

        assert status.kind == ProgressKind.TRANSIENT_ERROR
        assert reconciler.queue.num_requeues(NET) == 1
        reconciler.queue.shut_down()


@pytest.mark.asyncio
class TestOwnKindHandler:
    async def test_ignores_status_only_changes(self, store, cloud, make_object):
        controller = await build_controller(store, cloud)
        queue = controller.reconcilers["Network"].queue
        handler = Controller._own_kind_handler(queue)
        obj = await store.create(make_object("Network", "net"))
        updated = obj.copy()
        updated.status = {"id": "x"}

        assert await handler(WatchEvent(EventType.ADDED, obj=obj)) == 1
        assert (
            await handler(WatchEvent(EventType.MODIFIED, obj=updated, old_obj=obj))
            == 0
        )
        assert len(queue) == 1


@pytest.mark.asyncio
class TestControllerRun:
    """End-to-end runs with watches and workers."""

    async def _wait_for(self, predicate, timeout=5.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while asyncio.get_running_loop().time() < deadline:
            if await predicate():
                return True
            await asyncio.sleep(0.01)
        return False

    async def test_dependents_reconciled_through_watches(
        self, store, cloud, make_object
    ):
        controller = await build_controller(store, cloud, resync_interval=3600)
        task = asyncio.create_task(controller.start())
        try:
            await store.create(make_object("Subnet", "sub", networkRef="net"))
            await store.create(make_object("Network", "net"))

            async def subnet_available():
                return is_available(await store.get(SUB))

            assert await self._wait_for(subnet_available)
        finally:
            await controller.stop()
            await asyncio.wait_for(task, timeout=5)

        assert len(cloud.of_kind("Subnet")) == 1

    async def test_trigger_reconciliation(self, store, cloud):
        controller = await build_controller(store, cloud)
        controller.trigger_reconciliation(NET)
        assert len(controller.reconcilers["Network"].queue) == 1

        with pytest.raises(ValueError):
            controller.trigger_reconciliation(ObjectKey("Port", "default", "p"))
