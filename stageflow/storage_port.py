"""
Persistence boundary.

The entity store writes each collection into one named slot of a key-value
store. This module defines the port and the two adapters shipped with the
package: an in-process dictionary and a directory of JSON files.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, Optional

logger = logging.getLogger("storage_port")


class KeyValuePort(ABC):
    """Named text slots. Values are opaque serialized payloads."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored payload, or None if the slot is empty."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Replace the payload of a slot."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Empty a slot. Missing slots are ignored."""

    @abstractmethod
    def keys(self) -> Iterator[str]:
        """Iterate over occupied slot names."""


class InMemoryKeyValueStore(KeyValuePort):
    """Dictionary-backed port, used for tests and ephemeral runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self._data.keys()))


class FileKeyValueStore(KeyValuePort):
    """
    One ``<key>.json`` file per slot under ``base_dir``.

    Writes go to a temp file that is fsync'd and then moved over the target,
    so a crash never leaves a half-written slot behind.
    """

    SUFFIX = ".json"

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create storage directory: {e}")

    def _path(self, key: str) -> Path:
        return self._base_dir / f"{key}{self.SUFFIX}"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(path)
        except OSError:
            if temp_file.exists():
                temp_file.unlink()
            raise

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def keys(self) -> Iterator[str]:
        if not self._base_dir.exists():
            return iter([])
        return iter(sorted(p.stem for p in self._base_dir.glob(f"*{self.SUFFIX}")))
