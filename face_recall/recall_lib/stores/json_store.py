"""Base class for JSON-backed stores with thread-safe read/write operations."""
from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Dict


class StoreError(RuntimeError):
    """Raised when a store cannot be read from or written to disk."""


class BaseJSONStore:
    """Base class for JSON-backed stores with thread-safe operations.

    Provides:
    - Thread-safe file I/O with atomic writes
    - Versioning and timestamp tracking
    - Reload when the file is changed by another process

    Subclasses should:
    - Define VERSION as a class variable
    - Override _init_data() to provide initial data structure
    - Override _apply_payload() to validate and merge loaded data
    """

    VERSION = 1

    def __init__(self, path: Path) -> None:
        """Initialize store with file path.

        Args:
            path: Path to JSON file for persistence
        """
        self.path = path
        self.lock = threading.RLock()
        self._data: Dict[str, Any] = self._init_data()
        self._mtime_ns = 0
        self._load()

    def _init_data(self) -> Dict[str, Any]:
        """Initialize default data structure.

        Returns:
            Dictionary with initial data structure including version and updated_at
        """
        return {
            "version": self.VERSION,
            "updated_at": int(time.time()),
        }

    def _load(self) -> None:
        """Load data from the JSON file if it exists.

        Raises:
            StoreError: If the file exists but cannot be read or parsed
        """
        if not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"Unable to read {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise StoreError(f"Unexpected payload in {self.path}")
        data = self._init_data()
        version = payload.get("version")
        if isinstance(version, int) and version > 0:
            data["version"] = version
        updated = payload.get("updated_at")
        if isinstance(updated, (int, float)):
            data["updated_at"] = int(updated)
        self._apply_payload(data, payload)
        self._data = data
        self._mtime_ns = self._stat_mtime()

    def _apply_payload(self, data: Dict[str, Any], payload: Dict[str, Any]) -> None:
        """Copy validated sections of ``payload`` into ``data``."""

    def _stat_mtime(self) -> int:
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return 0

    def _refresh_if_changed(self) -> None:
        """Reload data if the file was modified externally. Must be called with lock held."""
        if self._stat_mtime() != self._mtime_ns:
            self._load()

    def _touch_locked(self) -> None:
        """Update version and timestamp. Must be called with lock held."""
        self._data["version"] = self.VERSION
        self._data["updated_at"] = int(time.time())

    def _write_locked(self) -> None:
        """Write data to disk atomically. Must be called with lock held.

        Writes to a temporary file and then replaces the original, so a crash
        mid-write never leaves a truncated file behind.
        """
        self._touch_locked()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            temp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
            temp_path.replace(self.path)
        except OSError as exc:
            raise StoreError(f"Unable to write {self.path}: {exc}") from exc
        self._mtime_ns = self._stat_mtime()
