"""Tests for the persisted settings object."""

import pytest
from pydantic import ValidationError

from loomtree.core.config import Settings
from loomtree.core.persistence import SETTINGS_KEY
from loomtree.core.schemas_completion import LoomSettings
from loomtree.core.settings_store import SettingsStore, default_loom_settings


def test_defaults_match_documented_values(storage):
    """Test the built-in settings defaults."""
    settings = SettingsStore(storage, defaults=LoomSettings())
    current = settings.current

    assert current.api_key == ""
    assert current.api_base_url == "https://api.openai.com/v1"
    assert current.model == "gpt-3.5-turbo-instruct"
    assert current.temperature == 0.7
    assert current.max_tokens == 256
    assert current.num_generations == 3
    assert current.max_parallel_requests == 5
    assert current.max_leaf_generations == 10


def test_update_persists_camel_case_blob(storage):
    """Test that updates are saved with camelCase keys."""
    settings = SettingsStore(storage, defaults=LoomSettings())
    settings.update(api_key="abc", numGenerations=4)

    saved = storage.load_json(SETTINGS_KEY)
    assert saved["apiKey"] == "abc"
    assert saved["numGenerations"] == 4
    assert settings.current.num_generations == 4


def test_update_rejects_out_of_range_values(storage):
    """Test that invalid updates raise and change nothing."""
    settings = SettingsStore(storage, defaults=LoomSettings())
    with pytest.raises(ValidationError):
        settings.update(num_generations=0)
    assert settings.current.num_generations == 3


def test_reset_restores_defaults(storage):
    """Test resetting settings."""
    settings = SettingsStore(storage, defaults=LoomSettings())
    settings.update(temperature=1.5)
    settings.reset()

    assert settings.current.temperature == 0.7
    assert storage.load_json(SETTINGS_KEY)["temperature"] == 0.7


def test_init_overlays_saved_values_and_keeps_unknown_keys(storage):
    """Test that saved values override defaults and unknown keys survive."""
    storage.set_item(SETTINGS_KEY, '{"model": "local", "viewMode": "tree"}')
    settings = SettingsStore(storage, defaults=LoomSettings())
    settings.init()

    assert settings.current.model == "local"
    assert settings.current.temperature == 0.7
    assert settings.current.to_json_dict()["viewMode"] == "tree"


def test_init_ignores_invalid_saved_values(storage):
    """Test init with a saved blob that fails validation."""
    storage.set_item(SETTINGS_KEY, '{"maxTokens": "lots"}')
    settings = SettingsStore(storage, defaults=LoomSettings())
    settings.init()

    assert settings.current.max_tokens == 256


def test_environment_seeds_defaults():
    """Test defaults taken from the environment."""
    env = Settings(LOOM_API_KEY="env-key", LOOM_API_BASE_URL="http://localhost:8080/v1")
    defaults = default_loom_settings(env)

    assert defaults.api_key == "env-key"
    assert defaults.api_base_url == "http://localhost:8080/v1"


@pytest.mark.parametrize("blob", ["[1, 2]", '"text"', "42"])
def test_init_ignores_non_object_blob(storage, blob):
    """A settings blob that is JSON but not an object leaves the defaults in place."""
    storage.set_item(SETTINGS_KEY, blob)
    settings = SettingsStore(storage, defaults=LoomSettings())
    settings.init()

    assert settings.current == LoomSettings()
