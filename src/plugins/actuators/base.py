"""
Resource Actuator Base - Abstract interface to one kind of external resource.

Actuators are thin adapters between a ManagedObject kind and the cloud API
that owns the real resource. The reconcile controller drives them; they
never touch the object store themselves.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dependency import DependencyRelation
from objects import ManagedObject
from progress import ProgressStatus


@dataclass
class ActuatorContext:
    """
    Everything an actuator may use while acting on one object.

    ``dependencies`` holds the resolved, Available Targets of each relation,
    keyed by the relation's index name.
    """

    obj: ManagedObject
    dependencies: Dict[str, List[ManagedObject]] = field(default_factory=dict)

    @property
    def resource(self) -> Dict[str, Any]:
        return self.obj.resource or {}

    @property
    def import_filter(self) -> Dict[str, Any]:
        return self.obj.import_filter or {}

    def dependency(self, index_name: str) -> Optional[ManagedObject]:
        deps = self.dependencies.get(index_name) or []
        return deps[0] if deps else None

    def dependency_id(self, index_name: str) -> Optional[str]:
        """External ID of the single Target resolved under ``index_name``."""
        dep = self.dependency(index_name)
        return dep.external_id if dep is not None else None

    def dependency_ids(self, index_name: str) -> Dict[str, str]:
        """Map of Target name to external ID for a many-valued relation."""
        return {
            dep.name: dep.external_id
            for dep in self.dependencies.get(index_name) or []
            if dep.external_id
        }


class ResourceActuator(ABC):
    """
    Abstract base class for resource actuators.

    Subclasses declare the kind they manage and the relations that kind's
    objects hold to other objects. Create-or-adopt is split into
    :meth:`get_by_id`, :meth:`find` and :meth:`create` so the controller can
    look for an existing resource before ever creating one.
    """

    relations: List[DependencyRelation] = []

    @property
    @abstractmethod
    def kind(self) -> str:
        """ManagedObject kind handled by this actuator (e.g. 'Network')."""
        pass

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def controller_name(self) -> str:
        """Name used for this kind's controller finalizer."""
        return self.kind.lower()

    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the actuator with configuration.

        Args:
            config: Actuator-specific configuration dictionary
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the actuator."""
        pass

    @abstractmethod
    async def get_by_id(
        self, ctx: ActuatorContext, resource_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Read the external resource by ID.

        Returns:
            The observed resource, or None if it does not exist.
        """
        pass

    @abstractmethod
    async def find(self, ctx: ActuatorContext) -> Optional[Dict[str, Any]]:
        """
        Look the external resource up without knowing its ID.

        For ``resource`` specs this searches by the identifying key (usually
        the name) so an interrupted create is adopted instead of repeated.
        For ``import`` specs it applies the import filter.

        Returns:
            The single matching resource, or None.
        """
        pass

    @abstractmethod
    async def create(self, ctx: ActuatorContext) -> Dict[str, Any]:
        """Create the external resource and return it as observed."""
        pass

    @abstractmethod
    async def delete(self, ctx: ActuatorContext, resource_id: str) -> None:
        """Delete the external resource. May raise NotFound."""
        pass

    async def update(
        self, ctx: ActuatorContext, observed: Dict[str, Any]
    ) -> List[ProgressStatus]:
        """
        Converge mutable fields of an existing resource.

        Returns:
            One status per update reconciler that ran; empty if none.
        """
        return []

    def resource_id(self, observed: Dict[str, Any]) -> str:
        return observed["id"]

    def is_available(self, observed: Dict[str, Any]) -> bool:
        """Whether the observed resource is ready for dependents to use."""
        return True

    def observed_status(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        """Fields of the observed resource copied into ``status.resource``."""
        return dict(observed)

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load actuator-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this actuator.
        """
        return {}
