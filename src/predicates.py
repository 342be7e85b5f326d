"""
Event predicates - decide which change events are worth a reconcile.

Filtering here bounds reconcile volume: most writes are status updates
that neither the object itself nor its dependents need to react to.
"""

from events import EventType, WatchEvent
from objects import is_available


def became_available(event: WatchEvent) -> bool:
    """
    True when the object's Available condition went from not-True to True.

    Creation of an object that is already Available counts as a transition.
    """
    if event.event_type == EventType.DELETED:
        return False
    was_available = is_available(event.old_obj)
    return not was_available and is_available(event.obj)


def spec_or_lifecycle_changed(event: WatchEvent) -> bool:
    """
    True for creation, spec (generation) changes, deletion requests and purge.

    Status-only writes, including the controller's own, are ignored.
    """
    if event.event_type in (EventType.ADDED, EventType.DELETED):
        return True

    old = event.old_obj
    if old is None:
        return True
    if old.generation != event.obj.generation:
        return True
    return not old.is_deleting and event.obj.is_deleting
