"""
Configuration module for the reconcile controller.

Loads configuration from environment variables.
Supports plugin-based architecture with per-kind actuator configuration.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _split_list(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()] if value else []


def _json_env(name: str) -> Dict[str, Any]:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring invalid JSON in {name}: {e}")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"Ignoring {name}: expected a JSON object")
        return {}
    return value


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "orc_operator"
    user: str = "orc"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "orc_operator"),
            user=os.getenv("DB_USER", "orc"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class StoreConfig:
    """Object store backend and change feed configuration."""

    backend: str = "postgres"  # postgres | memory
    watch_history_size: int = 1000
    event_queue_size: int = 1024

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STORE_BACKEND", "postgres").lower()
        if backend not in ("postgres", "memory"):
            raise ValueError(
                f"STORE_BACKEND must be 'postgres' or 'memory', got '{backend}'"
            )
        return cls(
            backend=backend,
            watch_history_size=int(os.getenv("WATCH_HISTORY_SIZE", "1000")),
            event_queue_size=int(os.getenv("EVENT_QUEUE_SIZE", "1024")),
        )


@dataclass
class ControllerConfig:
    """Controller reconcile loop configuration."""

    resync_interval: int = 600  # seconds
    max_concurrent_reconciles: int = 5
    kind_concurrency: Dict[str, int] = field(default_factory=dict)
    reconcile_timeout: float = 300.0

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    import_poll_interval: float = 60.0
    availability_poll_interval: float = 10.0
    transient_error_threshold: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "600")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            kind_concurrency={
                kind: int(n) for kind, n in _json_env("KIND_CONCURRENCY").items()
            },
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "300")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            import_poll_interval=float(os.getenv("IMPORT_POLL_INTERVAL", "60")),
            availability_poll_interval=float(
                os.getenv("AVAILABILITY_POLL_INTERVAL", "10")
            ),
            transient_error_threshold=int(os.getenv("TRANSIENT_ERROR_THRESHOLD", "5")),
        )


@dataclass
class OpenStackConfig:
    """OpenStack endpoints and credentials."""

    network_endpoint: str = "http://localhost:9696/v2.0"
    identity_endpoint: str = "http://localhost:5000/v3"
    auth_token: str = field(default="", repr=False)  # Never log token
    request_timeout: int = 30

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            network_endpoint=os.getenv(
                "OS_NETWORK_ENDPOINT", "http://localhost:9696/v2.0"
            ),
            identity_endpoint=os.getenv(
                "OS_IDENTITY_ENDPOINT", "http://localhost:5000/v3"
            ),
            auth_token=os.getenv("OS_AUTH_TOKEN", ""),
            request_timeout=int(os.getenv("OS_REQUEST_TIMEOUT", "30")),
        )

    def to_actuator_config(self) -> Dict[str, Any]:
        return {
            "network_endpoint": self.network_endpoint,
            "identity_endpoint": self.identity_endpoint,
            "auth_token": self.auth_token,
            "request_timeout": self.request_timeout,
        }


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Enabled kinds and input plugins (empty = use all registered)
    enabled_kinds: List[str] = field(default_factory=list)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by kind or plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled_kinds=_split_list(os.getenv("ENABLED_KINDS", "")),
            enabled_input_plugins=_split_list(os.getenv("ENABLED_INPUT_PLUGINS", "")),
            plugin_configs=_json_env("PLUGIN_CONFIGS"),
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    store: StoreConfig
    controller: ControllerConfig
    openstack: OpenStackConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """
        Load all configuration from environment variables.

        Database settings are only required by the postgres backend.
        """
        store = StoreConfig.from_env()
        if store.backend == "postgres":
            database = DatabaseConfig.from_env()
        else:
            database = DatabaseConfig()
        return cls(
            database=database,
            store=store,
            controller=ControllerConfig.from_env(),
            openstack=OpenStackConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            store=StoreConfig(),
            controller=ControllerConfig(),
            openstack=OpenStackConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
