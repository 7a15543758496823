"""
Key-value state backends for the polling session store.

Provides pluggable persistence for polling state:
- memory: per-process dictionary, lost on restart (tests, single views)
- file: one JSON document per key on local disk (survives reloads)
"""

import os
import sys
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from ..exceptions import StorageError

logger = structlog.get_logger(__name__)


class KeyValueStore(ABC):
    """Abstract base class for polling state persistence."""

    @abstractmethod
    def save(self, key: str, blob: str) -> None:
        """
        Store a serialized blob under a key, replacing any previous value.

        Args:
            key: Storage key (e.g., 'pollingState')
            blob: Serialized state
        """
        pass

    @abstractmethod
    def load(self, key: str) -> str | None:
        """
        Load the blob stored under a key.

        Args:
            key: Storage key

        Returns:
            Serialized state or None if nothing is stored
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete the blob stored under a key.

        Args:
            key: Storage key

        Returns:
            True if a value was removed
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if the backend is usable.

        Returns:
            True if healthy, False otherwise
        """
        pass

    def get_memory_stats(self) -> dict[str, Any]:
        """Get storage usage statistics."""
        return {"keys_count": 0, "memory_usage_bytes": 0}


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory persistence, scoped to the lifetime of the process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, key: str, blob: str) -> None:
        self._data[key] = blob
        logger.debug("Saved state blob", key=key, size=len(blob))

    def load(self, key: str) -> str | None:
        return self._data.get(key)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def health_check(self) -> bool:
        """In-memory storage is always healthy."""
        return True

    def get_memory_stats(self) -> dict[str, Any]:
        return {
            "keys_count": len(self._data),
            "memory_usage_bytes": sys.getsizeof(self._data)
            + sum(sys.getsizeof(v) for v in self._data.values()),
        }


class FileKeyValueStore(KeyValueStore):
    """File-backed persistence: one ``<key>.json`` file per key."""

    def __init__(self, directory: str | Path) -> None:
        """
        Initialize the file store.

        Args:
            directory: Directory holding the state files (created on demand)
        """
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise StorageError(f"Invalid storage key: {key!r}", key=key)
        return self.directory / f"{key}.json"

    def save(self, key: str, blob: str) -> None:
        path = self._path_for(key)
        tmp_path = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Atomic replace: readers never see a partial snapshot
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(blob)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None:
                Path(tmp_path).unlink(missing_ok=True)
            raise StorageError(f"Failed to save state: {e}", key=key) from e

        logger.debug("Saved state file", key=key, path=str(path))

    def load(self, key: str) -> str | None:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to load state: {e}", key=key) from e

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete state: {e}", key=key) from e

    def health_check(self) -> bool:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            return os.access(self.directory, os.W_OK)
        except OSError as e:
            logger.error(
                "State directory not writable",
                directory=str(self.directory),
                error=str(e),
            )
            return False

    def get_memory_stats(self) -> dict[str, Any]:
        files = list(self.directory.glob("*.json")) if self.directory.exists() else []
        return {
            "keys_count": len(files),
            "memory_usage_bytes": sum(f.stat().st_size for f in files),
        }


class KeyValueStoreFactory:
    """Factory for creating the state backend configured for the deployment."""

    @staticmethod
    def create_store(mode: str, **kwargs: Any) -> KeyValueStore:
        """
        Create a key-value store instance.

        Args:
            mode: Backend mode ('memory' or 'file')
            **kwargs: Backend options (``directory`` for the file backend)

        Returns:
            KeyValueStore instance

        Raises:
            ValueError: If mode is not supported
        """
        mode = mode.lower()

        if mode == "memory":
            logger.info("Creating in-memory polling state backend")
            return InMemoryKeyValueStore()
        elif mode == "file":
            directory = kwargs.get("directory") or "./.docverify-state"
            logger.info("Creating file polling state backend", directory=directory)
            return FileKeyValueStore(directory)
        else:
            raise ValueError(
                f"Unknown state backend: {mode}. Supported modes: 'memory', 'file'"
            )

    @staticmethod
    def get_supported_modes() -> list[str]:
        """Get list of supported backend modes."""
        return ["memory", "file"]
