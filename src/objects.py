"""
Managed Objects - Declarative records of desired and observed state.

A ManagedObject describes one external OpenStack resource. Its spec holds
either a ``resource`` section (desired fields plus named references to other
objects) or an ``import`` section (how to locate a pre-existing resource).
The status is written only by the controller.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

CONDITION_AVAILABLE = "Available"
CONDITION_PROGRESSING = "Progressing"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

REASON_SUCCESS = "Success"
REASON_PROGRESSING = "Progressing"
REASON_WAITING = "WaitingForDependency"
REASON_TRANSIENT_ERROR = "TransientError"
REASON_INVALID_CONFIGURATION = "InvalidConfiguration"
REASON_UNRECOVERABLE_ERROR = "UnrecoverableError"
REASON_DELETING = "Deleting"

FINALIZER_DOMAIN = "openstack.orc.io"


def now_iso() -> str:
    """Current UTC time as an RFC 3339 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ObjectKey(NamedTuple):
    """Identifies a managed object and doubles as a reconcile request."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


ReconcileRequest = ObjectKey


@dataclass
class ManagedObject:
    """A namespaced, named record of desired and observed state."""

    kind: str
    namespace: str
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    # finalizer token -> owner identities holding a deletion guard
    guards: Dict[str, List[str]] = field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None
    generation: int = 1
    version: int = 0
    created_at: Optional[datetime] = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    @property
    def resource(self) -> Optional[Dict[str, Any]]:
        return self.spec.get("resource")

    @property
    def import_(self) -> Optional[Dict[str, Any]]:
        return self.spec.get("import")

    @property
    def import_filter(self) -> Optional[Dict[str, Any]]:
        if self.import_ is None:
            return None
        return self.import_.get("filter")

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def external_id(self) -> Optional[str]:
        return self.status.get("id")

    def copy(self) -> "ManagedObject":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "spec": self.spec,
            "status": self.status,
            "finalizers": list(self.finalizers),
            "guards": {k: list(v) for k, v in self.guards.items()},
            "deletion_timestamp": self.deletion_timestamp,
            "generation": self.generation,
            "version": self.version,
            "created_at": self.created_at,
        }


def get_condition(
    obj: ManagedObject, condition_type: str
) -> Optional[Dict[str, Any]]:
    """Return the condition of the given type, if present."""
    for condition in obj.status.get("conditions", []):
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    obj: ManagedObject,
    condition_type: str,
    status: str,
    reason: str,
    message: str = "",
    generation: Optional[int] = None,
) -> bool:
    """
    Set a condition on the object's status.

    lastTransitionTime only moves when the condition's status changes.
    ``generation`` defaults to the object's current generation.

    Returns:
        True if anything about the condition changed.
    """
    if generation is None:
        generation = obj.generation
    conditions = obj.status.setdefault("conditions", [])
    for condition in conditions:
        if condition["type"] != condition_type:
            continue
        changed = (
            condition.get("status") != status
            or condition.get("reason") != reason
            or condition.get("message") != message
            or condition.get("observedGeneration") != generation
        )
        if condition.get("status") != status:
            condition["lastTransitionTime"] = now_iso()
        condition["status"] = status
        condition["reason"] = reason
        condition["message"] = message
        condition["observedGeneration"] = generation
        return changed

    conditions.append(
        {
            "type": condition_type,
            "status": status,
            "reason": reason,
            "message": message,
            "observedGeneration": generation,
            "lastTransitionTime": now_iso(),
        }
    )
    return True


def is_available(obj: Optional[ManagedObject]) -> bool:
    """True if the object exists and its Available condition is True."""
    if obj is None:
        return False
    condition = get_condition(obj, CONDITION_AVAILABLE)
    return condition is not None and condition.get("status") == CONDITION_TRUE


def is_terminal(obj: ManagedObject) -> bool:
    """True if the last reconcile of the current generation failed terminally."""
    condition = get_condition(obj, CONDITION_PROGRESSING)
    if condition is None:
        return False
    return (
        condition.get("status") == CONDITION_FALSE
        and condition.get("reason")
        in (REASON_INVALID_CONFIGURATION, REASON_UNRECOVERABLE_ERROR)
        and condition.get("observedGeneration") == obj.generation
    )


def controller_finalizer(controller_name: str) -> str:
    return f"{FINALIZER_DOMAIN}/{controller_name}"
