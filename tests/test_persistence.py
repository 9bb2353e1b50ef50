"""Tests for the durable key/value cache."""

from unittest.mock import MagicMock

import pytest

from loomtree.core.persistence import (
    GRAPH_KEY,
    SETTINGS_KEY,
    JsonFileStorage,
    load_graph,
    load_settings,
    save_graph,
    save_settings,
)


def test_file_storage_round_trip(tmp_path):
    """Test writing and reading both blobs."""
    storage = JsonFileStorage(tmp_path / "data")

    save_graph(storage, {"nodes": [1], "edges": []})
    save_settings(storage, {"apiKey": "k"})

    assert load_graph(storage) == {"nodes": [1], "edges": []}
    assert load_settings(storage) == {"apiKey": "k"}
    assert (tmp_path / "data" / "loomnodes_graph.json").exists()
    assert not list((tmp_path / "data").glob("*.tmp"))


def test_missing_key_is_first_run(tmp_path):
    """Test loading keys that were never written."""
    storage = JsonFileStorage(tmp_path)
    assert load_graph(storage) is None
    assert load_settings(storage) is None


def test_corrupt_blob_loads_as_none(tmp_path):
    """Test loading a blob that is not JSON."""
    storage = JsonFileStorage(tmp_path)
    storage.set_item(GRAPH_KEY, "{not json")
    assert load_graph(storage) is None


@pytest.mark.parametrize("blob", ["[1, 2]", '"text"', "42"])
def test_non_object_blob_loads_as_none(tmp_path, blob):
    """Only JSON objects count as a stored graph or settings blob."""
    storage = JsonFileStorage(tmp_path)
    storage.set_item(GRAPH_KEY, blob)
    storage.set_item(SETTINGS_KEY, blob)

    assert load_graph(storage) is None
    assert load_settings(storage) is None


def test_remove_item(tmp_path):
    """Test removing a stored key."""
    storage = JsonFileStorage(tmp_path)
    save_settings(storage, {"a": 1})
    storage.remove_item(SETTINGS_KEY)
    storage.remove_item(SETTINGS_KEY)
    assert load_settings(storage) is None


def test_write_failure_is_swallowed():
    """Test that a failing write is logged, not raised."""
    storage = MagicMock()
    storage.set_item.side_effect = OSError("quota exceeded")

    save_graph(storage, {"nodes": [], "edges": []})

    storage.set_item.assert_called_once()


def test_read_failure_returns_none():
    """Test that a failing read loads as None."""
    storage = MagicMock()
    storage.get_item.side_effect = PermissionError("denied")
    assert load_graph(storage) is None
