"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for actuator and input plugins,
handling discovery, registration, and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.actuators.base import ResourceActuator
from plugins.inputs.base import InputPlugin

logger = logging.getLogger(__name__)


class PluginRegistry:
    """
    Central registry for all plugins.

    Actuators are keyed by the ManagedObject kind they manage; input
    plugins by name.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._actuators: Dict[str, Type[ResourceActuator]] = {}
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}

        # Cached plugin metadata to avoid repeated instantiation
        self._actuator_info: Dict[str, Dict[str, Any]] = {}
        self._input_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized plugin instances
        self._actuator_instances: Dict[str, ResourceActuator] = {}
        self._input_instances: Dict[str, InputPlugin] = {}

        # Plugin configurations loaded from environment
        self._actuator_configs: Dict[str, Dict[str, Any]] = {}
        self._input_plugin_configs: Dict[str, Dict[str, Any]] = {}

    # Registration methods

    def register_actuator(self, actuator_class: Type[ResourceActuator]) -> None:
        """
        Register an actuator class.

        Args:
            actuator_class: The ResourceActuator subclass to register
        """
        temp_instance = actuator_class()
        kind = temp_instance.kind

        if kind in self._actuators:
            logger.warning(f"Overwriting existing actuator for kind: {kind}")

        self._actuators[kind] = actuator_class
        self._actuator_info[kind] = {
            "kind": kind,
            "version": temp_instance.version,
            "relations": [
                {
                    "index": relation.index_name,
                    "target_kind": relation.target_kind,
                    "guarded": relation.guarded,
                }
                for relation in temp_instance.relations
            ],
        }
        self._actuator_configs[kind] = actuator_class.load_config_from_env()
        logger.info(f"Registered actuator: {kind} v{temp_instance.version}")

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._input_plugins:
            logger.warning(f"Overwriting existing input plugin: {name}")

        self._input_plugins[name] = plugin_class
        self._input_plugin_info[name] = {"name": name, "version": version}
        self._input_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {name} v{version}")

    # Instantiation methods

    async def get_actuator(
        self, kind: str, config: Optional[Dict[str, Any]] = None
    ) -> ResourceActuator:
        """
        Get an initialized actuator instance.

        Configuration loaded from the environment at registration is merged
        with ``config``, which takes precedence.

        Raises:
            ValueError: If no actuator is registered for the kind
        """
        if kind not in self._actuators:
            available = ", ".join(self._actuators.keys()) or "none"
            raise ValueError(f"Unknown kind: {kind}. Available kinds: {available}")

        if kind not in self._actuator_instances:
            actuator_config = dict(self._actuator_configs.get(kind, {}))
            actuator_config.update(config or {})
            actuator = self._actuators[kind]()
            await actuator.initialize(actuator_config)
            self._actuator_instances[kind] = actuator
            logger.info(f"Initialized actuator: {kind}")

        return self._actuator_instances[kind]

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized InputPlugin instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            await plugin.initialize(config or {})
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    # Discovery methods

    def list_actuators(self) -> List[str]:
        """List all kinds with a registered actuator."""
        return list(self._actuators.keys())

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def has_actuator(self, kind: str) -> bool:
        return kind in self._actuators

    def has_input_plugin(self, name: str) -> bool:
        return name in self._input_plugins

    def get_actuator_info(self, kind: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a registered actuator.

        Returns:
            Dictionary with 'kind', 'version' and 'relations', or None
        """
        return self._actuator_info.get(kind)

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        return self._input_plugin_info.get(name)

    def get_actuator_config(self, kind: str) -> Dict[str, Any]:
        return self._actuator_configs.get(kind, {})

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        return self._input_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the built-in plugins and discover third-party actuators via
    entry points.

    Called during application startup.
    """
    registry = get_registry()

    from plugins.actuators.openstack import BUILTIN_ACTUATORS

    for actuator_class in BUILTIN_ACTUATORS:
        registry.register_actuator(actuator_class)

    from plugins.inputs.http import HTTPInputPlugin

    registry.register_input_plugin(HTTPInputPlugin)

    for ep in entry_points(group="orc.actuators"):
        try:
            registry.register_actuator(ep.load())
        except Exception as e:
            logger.warning(f"Could not load actuator plugin {ep.name}: {e}")

    for ep in entry_points(group="orc.inputs"):
        try:
            registry.register_input_plugin(ep.load())
        except Exception as e:
            logger.warning(f"Could not load input plugin {ep.name}: {e}")
