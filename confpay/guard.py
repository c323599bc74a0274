"""
Guard store — local idempotency markers and salary cache.

Storage layout (``$CONFPAY_HOME/guard.json``):
    {
      "last_paid":  {"<worker address>": "<iso-8601>"},   <- guard records
      "salaries":   {"<worker address>": "<display amount>"},
      "settings":   {"autopay_enabled": true, "history_cleared_at": "<iso>"}
    }

This is the single shared mutable resource between autopay and manual
payments. A guard record is written the moment a transfer confirms and
before any further step, so a crash after that point cannot lead to a second
transfer inside the cool-down window.

Thread-safe via threading.Lock. All writes are atomic (temp file +
os.replace). With no path the store lives in memory only.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from confpay import HOME_DIRNAME

logger = logging.getLogger(__name__)


class GuardStoreError(Exception):
    """Error in guard store operations."""


def default_home() -> Path:
    """Local state directory: $CONFPAY_HOME or ~/.confpay."""
    env = os.environ.get("CONFPAY_HOME", "")
    return Path(env) if env else Path.home() / HOME_DIRNAME


def _parse_instant(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GuardStore:
    """Persisted guard records, cached salaries and bot settings.

    Usage:
        guard = GuardStore(default_home() / "guard.json")
        if not guard.is_guarded(addr, now, timedelta(minutes=15)):
            ...
            guard.mark_paid(addr, now)
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {
            "last_paid": {},
            "salaries": {},
            "settings": {},
        }
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self) -> None:
        """Load state from disk. Missing or corrupt files start empty."""
        if self._path is None or not self._path.is_file():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Guard store %s unreadable, starting empty", self._path)
            return
        if not isinstance(data, dict):
            return
        for section in self._data:
            value = data.get(section)
            if isinstance(value, dict):
                self._data[section] = value

    def _persist(self) -> None:
        """Atomically write state to disk (temp + os.replace)."""
        if self._path is None:
            return
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        content = json.dumps(self._data, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(directory), suffix=".tmp", prefix=".guard_"
        )
        try:
            os.write(fd, content.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self._path))
        except Exception as e:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise GuardStoreError(f"Failed to persist guard store: {e}") from e

    # -- guard records -----------------------------------------------------

    def mark_paid(self, address: str, at: datetime) -> None:
        """Record a local payment attempt. Durable before returning."""
        with self._lock:
            self._data["last_paid"][address] = at.isoformat()
            self._persist()

    def last_paid(self, address: str) -> datetime | None:
        with self._lock:
            return _parse_instant(self._data["last_paid"].get(address))

    def is_guarded(self, address: str, now: datetime, window: timedelta) -> bool:
        """True if a guard record for this worker is younger than the window."""
        last = self.last_paid(address)
        if last is None:
            return False
        return now - last < window

    def prune(self, now: datetime, window: timedelta) -> int:
        """Drop guard records older than the window. Returns how many went."""
        with self._lock:
            stale = []
            for addr, value in self._data["last_paid"].items():
                ts = _parse_instant(value)
                if ts is None or now - ts >= window:
                    stale.append(addr)
            for addr in stale:
                del self._data["last_paid"][addr]
            if stale:
                self._persist()
            return len(stale)

    # -- salary cache ------------------------------------------------------

    def cache_salary(self, address: str, amount: float) -> None:
        with self._lock:
            self._data["salaries"][address] = str(amount)
            self._persist()

    def cached_salary(self, address: str) -> float | None:
        """A previously revealed salary, or None if absent or not positive."""
        with self._lock:
            raw = self._data["salaries"].get(address)
        if raw is None:
            return None
        try:
            amount = float(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid cached salary for %s: %r", address[:8], raw)
            return None
        return amount if amount > 0 else None

    def forget(self, address: str) -> None:
        """Remove everything known about a worker (on removal)."""
        with self._lock:
            self._data["last_paid"].pop(address, None)
            self._data["salaries"].pop(address, None)
            self._persist()

    # -- settings ----------------------------------------------------------

    @property
    def autopay_enabled(self) -> bool:
        with self._lock:
            return bool(self._data["settings"].get("autopay_enabled", False))

    def set_autopay_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._data["settings"]["autopay_enabled"] = bool(enabled)
            self._persist()

    @property
    def history_cleared_at(self) -> datetime | None:
        with self._lock:
            return _parse_instant(self._data["settings"].get("history_cleared_at"))

    def clear_history(self, at: datetime) -> None:
        """Hide payment history older than ``at`` from views."""
        with self._lock:
            self._data["settings"]["history_cleared_at"] = at.isoformat()
            self._persist()
