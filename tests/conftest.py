"""Pytest configuration and fixtures."""

import os

import pytest

from loomtree.core.config import get_settings
from loomtree.core.graph_store import GraphStore
from loomtree.core.schemas_completion import LoomSettings
from loomtree.core.settings_store import SettingsStore
from tests.fakes.fake_storage import FakeStorage


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["LOOM_ENV"] = "test"
    os.environ["LOOM_API_KEY"] = ""
    os.environ["LOOM_API_BASE_URL"] = "https://api.openai.com/v1"
    os.environ["LOOM_BATCH_ENDPOINT"] = ""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def store(storage) -> GraphStore:
    graph = GraphStore(storage, persist_delay=0.01)
    graph.init()
    return graph


@pytest.fixture
def settings_store(storage) -> SettingsStore:
    """Settings with a key set, independent of the developer's environment."""
    settings = SettingsStore(storage, defaults=LoomSettings())
    settings.update(api_key="test-key", num_generations=3, max_parallel_requests=5)
    return settings
