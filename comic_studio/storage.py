"""
Persistence backends for the comic store.

A backend is a keyed record store: it maps a namespace key to one JSON
compatible blob. lock() returns a context manager that excludes every other
user of the same backing store, including other processes, for the length
of a read-modify-write.
"""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Any, Iterator, Optional

from filelock import FileLock, Timeout


logger = logging.getLogger(__name__)


LOCK_TIMEOUT = 30  # seconds


class StorageError(Exception):
    """Persistence backend error."""
    pass


class MemoryBackend:
    """Keeps blobs in process memory; nothing survives a restart."""

    def __init__(self):
        self._blobs: Dict[str, str] = {}

    def lock(self):
        # Only this process can see the blobs; the store's own lock suffices
        return contextlib.nullcontext()

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._blobs.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key: str, blob: Dict[str, Any]) -> None:
        # Stored serialised so later mutation of blob cannot leak in
        self._blobs[key] = json.dumps(blob)


class JsonFileBackend:
    """Stores all namespaces in a single JSON file."""

    def __init__(self, path: Path, lock_timeout: float = LOCK_TIMEOUT):
        """
        Initialize file backend.

        Args:
            path: JSON file to read and write; created on first save
            lock_timeout: Seconds to wait for another process to release
                the state file
        """
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._file_lock = FileLock(str(self.lock_path), timeout=lock_timeout)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """
        Hold the state file's lock file.

        Re-entrant within one thread.

        Raises:
            StorageError: If another process keeps the lock past the timeout
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._file_lock.acquire()
        except Timeout:
            raise StorageError(f"Timed out waiting for lock on {self.path}")
        try:
            yield
        finally:
            self._file_lock.release()

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read state file {self.path}: {e}")
        if not isinstance(data, dict):
            raise StorageError(f"State file {self.path} does not hold an object")
        return data

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        return self._read_all().get(key)

    def save(self, key: str, blob: Dict[str, Any]) -> None:
        data = self._read_all()
        data[key] = blob

        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file and swap it in so readers never see
        # a half-written state file
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=self.path.name, suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write state file {self.path}: {e}")

        logger.debug(f"Persisted '{key}' to {self.path}")
