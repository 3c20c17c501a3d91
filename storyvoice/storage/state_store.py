"""Best-effort persistence of progress, preferences and the selected voice.

A :class:`KeyValueStore` holds opaque strings under namespaced keys.
:class:`StateRepository` serializes the engine's durable state into one
entry of such a store.  Every failure surfaces as :class:`StorageError`.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from storyvoice.config import STORAGE_NAMESPACE
from storyvoice.story.types import PersistedState

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """The store could not be read or written."""


class KeyValueStore(ABC):
    """Durable string storage keyed by strings."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value under *key*, or ``None`` when absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store *value* under *key*."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*.  No-op when absent."""


class MemoryStore(KeyValueStore):
    """Process-local store, used when nothing durable is configured."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """All keys kept in one JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise StorageError(f"Could not read {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            logger.warning(
                "State file root is not an object (%s) — starting fresh",
                type(data).__name__,
            )
            return {}
        return data

    def _write(self, data: dict) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Could not write {self._path}: {exc}") from exc
        logger.debug("Wrote state to %s", self._path)

    def get(self, key: str) -> str | None:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class StateRepository:
    """Loads and saves :class:`PersistedState` under ``<namespace>:state``."""

    def __init__(self, store: KeyValueStore, namespace: str = STORAGE_NAMESPACE) -> None:
        self._store = store
        self._key = f"{namespace}:state"

    @property
    def key(self) -> str:
        return self._key

    def load(self) -> PersistedState | None:
        """Return the saved state, or ``None`` when nothing was saved."""
        try:
            raw = self._store.get(self._key)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Failed to read saved state: {exc}") from exc
        if raw is None:
            return None
        try:
            return PersistedState.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"Saved state is corrupt: {exc}") from exc

    def save(self, state: PersistedState) -> None:
        try:
            self._store.set(self._key, state.model_dump_json())
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Failed to save state: {exc}") from exc

    def clear(self) -> None:
        try:
            self._store.delete(self._key)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Failed to clear saved state: {exc}") from exc
