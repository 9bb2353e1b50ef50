"""User settings backed by the ``settings`` blob."""

from typing import Any

from pydantic import ValidationError

from loomtree.core.config import Settings, get_settings
from loomtree.core.logging import get_logger
from loomtree.core.persistence import KeyValueStorage, load_settings, save_settings
from loomtree.core.schemas_completion import LoomSettings

logger = get_logger(__name__)


def default_loom_settings(env: Settings | None = None) -> LoomSettings:
    """Built-in defaults, overridden by whatever the environment provides."""
    env = env or get_settings()
    return LoomSettings(
        api_key=env.LOOM_API_KEY,
        api_base_url=env.LOOM_API_BASE_URL,
        model=env.LOOM_MODEL,
    )


class SettingsStore:
    """Loads, updates and resets the persisted settings object."""

    def __init__(self, storage: KeyValueStorage, defaults: LoomSettings | None = None):
        self._storage = storage
        self._defaults = defaults or default_loom_settings()
        self._current = self._defaults.model_copy()

    @property
    def current(self) -> LoomSettings:
        return self._current

    def init(self) -> None:
        """Overlay saved values on the defaults; a bad blob leaves the defaults in place."""
        saved = load_settings(self._storage)
        if not saved:
            return
        try:
            self._current = LoomSettings.model_validate(
                {**self._defaults.to_json_dict(), **saved}
            )
        except ValidationError as e:
            logger.warning(f"Ignoring invalid saved settings: {e.error_count()} errors")

    def update(self, **changes: Any) -> LoomSettings:
        """Apply changes (snake_case or camelCase keys) and persist.

        Raises:
            pydantic.ValidationError: if a value is out of range
        """
        merged = {**self._current.to_json_dict(), **_to_aliases(changes)}
        self._current = LoomSettings.model_validate(merged)
        save_settings(self._storage, self._current.to_json_dict())
        return self._current

    def reset(self) -> None:
        self._current = self._defaults.model_copy()
        save_settings(self._storage, self._current.to_json_dict())


def _to_aliases(changes: dict[str, Any]) -> dict[str, Any]:
    """Rename snake_case field names to their camelCase blob keys."""
    fields = LoomSettings.model_fields
    return {
        (fields[key].alias or key) if key in fields else key: value
        for key, value in changes.items()
    }
