"""Unit tests for predicates.py."""

from datetime import datetime, timezone

from events import EventType, WatchEvent
from objects import (
    CONDITION_AVAILABLE,
    CONDITION_TRUE,
    REASON_SUCCESS,
    ManagedObject,
    set_condition,
)
from predicates import became_available, spec_or_lifecycle_changed


def network(available=False, generation=1, deleting=False):
    obj = ManagedObject("Network", "default", "net", generation=generation)
    if available:
        set_condition(obj, CONDITION_AVAILABLE, CONDITION_TRUE, REASON_SUCCESS)
    if deleting:
        obj.deletion_timestamp = datetime(2024, 1, 15, tzinfo=timezone.utc)
    return obj


def modified(old, new):
    return WatchEvent(EventType.MODIFIED, obj=new, old_obj=old)


class TestBecameAvailable:
    def test_transition(self):
        assert became_available(modified(network(), network(available=True)))

    def test_already_available(self):
        available = network(available=True)
        assert not became_available(modified(available, available))

    def test_created_available(self):
        event = WatchEvent(EventType.ADDED, obj=network(available=True))
        assert became_available(event)

    def test_deleted(self):
        event = WatchEvent(
            EventType.DELETED, obj=network(available=True), old_obj=network()
        )
        assert not became_available(event)


class TestSpecOrLifecycleChanged:
    def test_added_and_deleted(self):
        assert spec_or_lifecycle_changed(WatchEvent(EventType.ADDED, obj=network()))
        assert spec_or_lifecycle_changed(
            WatchEvent(EventType.DELETED, obj=network(), old_obj=network())
        )

    def test_status_only_write_ignored(self):
        assert not spec_or_lifecycle_changed(
            modified(network(), network(available=True))
        )

    def test_generation_change(self):
        assert spec_or_lifecycle_changed(modified(network(), network(generation=2)))

    def test_deletion_requested(self):
        assert spec_or_lifecycle_changed(modified(network(), network(deleting=True)))

    def test_still_deleting(self):
        deleting = network(deleting=True)
        assert not spec_or_lifecycle_changed(modified(deleting, deleting))
