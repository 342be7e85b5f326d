"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import reset_config
from fakes import FakeCloud
from objects import ManagedObject
from plugins.registry import reset_registry
from store import InMemoryObjectStore


@pytest.fixture(autouse=True)
def clean_globals():
    """Reset the config and registry singletons around every test."""
    reset_config()
    reset_registry()
    yield
    reset_config()
    reset_registry()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def store():
    """An empty in-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def make_object():
    """Factory for unsaved managed objects."""

    def _make(kind="Network", name="net", namespace="default", **resource):
        return ManagedObject(
            kind=kind,
            namespace=namespace,
            name=name,
            spec={"resource": resource},
        )

    return _make
