"""
Main entry point for the OpenStack resource controller.

This module initializes and starts the controller with the plugin-based architecture.
"""

import asyncio
import logging
import os
import signal
from typing import Any, Dict, List, Optional

import controller as ctrl
from config import Config, get_config
from db import DatabaseManager
from events import EventBus
from objects import ManagedObject
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins
from store import InMemoryObjectStore, ObjectStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_controller_config(config: Config) -> ctrl.ControllerConfig:
    """Translate loaded settings into the controller's runtime config."""
    registry = get_registry()
    openstack = config.openstack.to_actuator_config()

    # Registry (env-loaded) config, then OS_* settings, then PLUGIN_CONFIGS
    actuator_configs: Dict[str, Dict[str, Any]] = {}
    for kind in registry.list_actuators():
        actuator_config = dict(registry.get_actuator_config(kind))
        actuator_config.update(openstack)
        actuator_config.update(config.plugins.get_plugin_config(kind))
        actuator_configs[kind] = actuator_config

    settings = config.controller
    return ctrl.ControllerConfig(
        resync_interval=settings.resync_interval,
        max_concurrent_reconciles=settings.max_concurrent_reconciles,
        kind_concurrency=dict(settings.kind_concurrency),
        reconcile_timeout=settings.reconcile_timeout,
        enabled_kinds=list(config.plugins.enabled_kinds),
        actuator_configs=actuator_configs,
        backoff_base_delay=settings.backoff_base_delay,
        backoff_max_delay=settings.backoff_max_delay,
        backoff_jitter_factor=settings.backoff_jitter_factor,
        import_poll_interval=settings.import_poll_interval,
        availability_poll_interval=settings.availability_poll_interval,
        transient_error_threshold=settings.transient_error_threshold,
    )


class Application:
    """Main application that orchestrates the store, controller and plugins."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[ObjectStore] = None
        self.controller: Optional[ctrl.Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def _create_store(self) -> ObjectStore:
        store_config = self.config.store
        self.event_bus = EventBus(queue_size=store_config.event_queue_size)

        if store_config.backend == "memory":
            logger.warning("Using in-memory object store; state is not persisted")
            return InMemoryObjectStore(
                event_bus=self.event_bus,
                history_size=store_config.watch_history_size,
            )

        db_config = self.config.database
        db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            event_bus=self.event_bus,
            history_size=store_config.watch_history_size,
        )
        await db.connect()
        await db.initialize_schema()
        await db.start_change_feed()
        logger.info("Database initialized")
        return db

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing OpenStack resource controller")

        # Register built-in plugins
        register_builtin_plugins()
        registry = get_registry()

        self.store = await self._create_store()

        self.controller = ctrl.Controller(
            store=self.store,
            registry=registry,
            config=build_controller_config(self.config),
        )
        await self.controller.setup()

        # Determine which input plugins to load
        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            # If not specified, use all registered input plugins
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            # Get plugin config from registry (env-loaded) with config overrides
            plugin_config = dict(registry.get_input_plugin_config(plugin_name))
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_store(self.store)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)
            logger.info(f"Initialized input plugin: {plugin_name}")

        logger.info("All components initialized")

    async def on_object_event(self, event_type: str, obj: ManagedObject) -> None:
        """Reconcile authored changes without waiting for the change feed."""
        logger.debug(f"Object event: {event_type} - {obj.key}")
        if self.controller and obj.kind in self.controller.reconcilers:
            self.controller.trigger_reconciliation(obj.key)

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting OpenStack resource controller")

        # Start controller and all input plugins concurrently
        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(self.on_object_event)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping OpenStack resource controller")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if isinstance(self.store, DatabaseManager):
            await self.store.close()

        logger.info("OpenStack resource controller stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
