"""Durable key/value cache for the graph and settings blobs.

Both blobs are whole-value JSON snapshots. Every operation here fails
silently: a full disk or unreadable file is logged and otherwise ignored,
and a missing key is a valid first-run state.
"""

import json
from pathlib import Path
from typing import Any, Protocol

from loomtree.core.logging import get_logger

logger = get_logger(__name__)

GRAPH_KEY = "loomnodes:graph"
SETTINGS_KEY = "loomnodes:settings"


class KeyValueStorage(Protocol):
    """Minimal string key/value store."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class JsonFileStorage:
    """Stores each key as ``<dir>/<key>.json``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key.replace(':', '_')}.json"

    def get_item(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        # Write then rename so a crash never leaves a half-written blob
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


def _save(storage: KeyValueStorage, key: str, data: Any) -> None:
    try:
        storage.set_item(key, json.dumps(data))
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Failed to persist {key}: {e}")


def _load(storage: KeyValueStorage, key: str) -> dict[str, Any] | None:
    try:
        raw = storage.get_item(key)
        data = json.loads(raw) if raw else None
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load {key}: {e}")
        return None
    if data is not None and not isinstance(data, dict):
        logger.warning(f"Ignoring {key}: expected a JSON object, got {type(data).__name__}")
        return None
    return data


def save_graph(storage: KeyValueStorage, data: dict[str, Any]) -> None:
    _save(storage, GRAPH_KEY, data)


def load_graph(storage: KeyValueStorage) -> dict[str, Any] | None:
    return _load(storage, GRAPH_KEY)


def save_settings(storage: KeyValueStorage, data: dict[str, Any]) -> None:
    _save(storage, SETTINGS_KEY, data)


def load_settings(storage: KeyValueStorage) -> dict[str, Any] | None:
    return _load(storage, SETTINGS_KEY)
