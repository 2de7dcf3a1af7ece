"""Cross-process advisory lock that gates batch runs.

The lock is a small JSON file created with ``O_CREAT | O_EXCL``. A lock whose
holder is older than the TTL, or whose pid is gone on this host, is treated
as abandoned and replaced. This is a single-host mechanism.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .logging_utils import log_event
from .time_utils import now_iso, parse_iso

DEFAULT_LOCK_TTL_SECONDS = 6 * 60 * 60

logger = logging.getLogger("ticket_autorunner.core.locks")


class BatchLockBusy(Exception):
    """Raised when another live holder owns the lock."""

    def __init__(self, path: Path, info: "LockInfo") -> None:
        holder = f"pid={info.pid}" if info.pid else "unknown holder"
        super().__init__(f"Lock {path} is held ({holder}, since {info.started_at})")
        self.path = path
        self.info = info


@dataclass(frozen=True)
class LockInfo:
    pid: Optional[int]
    started_at: Optional[str]
    host: Optional[str]


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def read_lock_info(path: Path) -> LockInfo:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockInfo(pid=None, started_at=None, host=None)
    if not raw:
        return LockInfo(pid=None, started_at=None, host=None)
    if raw.startswith("{"):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return LockInfo(pid=None, started_at=None, host=None)
        if not isinstance(payload, dict):
            return LockInfo(pid=None, started_at=None, host=None)
        pid_value = payload.get("pid")
        try:
            pid = int(pid_value) if pid_value is not None else None
        except (TypeError, ValueError):
            pid = None
        started_at = payload.get("started_at")
        host = payload.get("host")
        return LockInfo(
            pid=pid,
            started_at=started_at if isinstance(started_at, str) else None,
            host=host if isinstance(host, str) else None,
        )
    try:
        return LockInfo(pid=int(raw), started_at=None, host=None)
    except ValueError:
        return LockInfo(pid=None, started_at=None, host=None)


def _lock_payload(pid: int, started_at: str) -> str:
    return json.dumps(
        {"pid": pid, "started_at": started_at, "host": socket.gethostname()}
    )


def write_lock_info(path: Path, pid: int, *, started_at: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_lock_payload(pid, started_at), encoding="utf-8")


def _lock_age_seconds(info: LockInfo, path: Path) -> Optional[float]:
    now = datetime.now(timezone.utc)
    if info.started_at:
        try:
            return (now - parse_iso(info.started_at)).total_seconds()
        except ValueError:
            pass
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return None
    return now.timestamp() - mtime


def lock_is_stale(path: Path, info: LockInfo, ttl_seconds: float) -> bool:
    age = _lock_age_seconds(info, path)
    if age is None or age >= ttl_seconds:
        return True
    if info.pid and info.host == socket.gethostname():
        return not process_alive(info.pid)
    return False


class BatchLock:
    """Non-blocking lock file with TTL-based recovery from crashed holders."""

    def __init__(
        self, path: Path, *, ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS
    ) -> None:
        self.path = path
        self.ttl_seconds = ttl_seconds
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        if self._token is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            token = now_iso()
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                info = read_lock_info(self.path)
                if not lock_is_stale(self.path, info, self.ttl_seconds):
                    raise BatchLockBusy(self.path, info) from None
                log_event(
                    logger,
                    logging.WARNING,
                    "batch_lock.stale_removed",
                    path=self.path,
                    pid=info.pid,
                    started_at=info.started_at,
                )
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(_lock_payload(os.getpid(), token))
            self._token = token
            return
        raise BatchLockBusy(self.path, read_lock_info(self.path))

    def release(self) -> None:
        if self._token is None:
            return
        info = read_lock_info(self.path)
        if info.pid == os.getpid() and info.started_at == self._token:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        self._token = None

    def __enter__(self) -> "BatchLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


__all__ = [
    "BatchLock",
    "BatchLockBusy",
    "DEFAULT_LOCK_TTL_SECONDS",
    "LockInfo",
    "lock_is_stale",
    "process_alive",
    "read_lock_info",
    "write_lock_info",
]
