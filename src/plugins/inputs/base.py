"""
Input Plugin Base - Abstract interface for managed object input sources.

Input plugins provide mechanisms for authors to submit managed objects:
- HTTP API: REST endpoints
- GitOps: Watch Git repositories
- File watcher: Watch local manifests
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from objects import ManagedObject

# Callback for authored changes: (event_type, object) -> None, where
# event_type is 'created', 'updated' or 'deleted'
ObjectCallback = Callable[[str, ManagedObject], Awaitable[None]]


@dataclass
class ValidationResult:
    """Result of a validation operation."""

    is_valid: bool
    error_message: Optional[str] = None


def validate_kind(kind: str) -> ValidationResult:
    """
    Validate that an actuator is registered for a kind.

    Input plugins use this to reject objects no controller would manage.
    """
    from plugins.registry import get_registry

    registry = get_registry()
    if not registry.has_actuator(kind):
        available = registry.list_actuators()
        return ValidationResult(
            is_valid=False,
            error_message=f"Unknown kind: {kind}. "
            f"Available kinds: {', '.join(available) or 'none'}",
        )
    return ValidationResult(is_valid=True)


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins receive managed objects from external sources and write
    them to the object store; the controller picks changes up from the
    store's change feed.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_object_event: ObjectCallback) -> None:
        """
        Start the input plugin.

        Args:
            on_object_event: Invoked after each authored create, update or
                deletion request has been written to the store.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load plugin-specific configuration from environment variables."""
        return {}

    def set_store(self, store: Any) -> None:
        """
        Set the object store for plugins that write managed objects.

        Args:
            store: The ObjectStore instance
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus for plugins that stream change events.

        Args:
            event_bus: The EventBus instance
        """
        pass
