"""Filesystem primitives shared by every mesh component.

Concurrency Architecture:
- Per-agent registration locks (<name>.json.lock) serialize registry mutations
- Lock metadata (<lock>.owner.json) records owner pid and acquisition time
- Stale locks (dead owner or too old) are force-reclaimed, then acquisition retries
- Content files are replaced atomically (temp sibling + os.replace)
- The message log is append-only: one os.write per line on an O_APPEND descriptor

Key Design Decisions:
1. File locks use SoftFileLock (exclusive create, no OS advisory lock support needed)
2. Lock acquisition failure is soft: callers get None/False and carry on
3. The shared directory tree is the only global state; components receive a MeshPaths handle
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import psutil
from filelock import SoftFileLock, Timeout

from .config import Settings, get_settings

_logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_SUFFIX = ".lock"
LOCK_METADATA_SUFFIX = ".owner.json"
QUARANTINE_DIRNAME = ".invalid"


@dataclass(slots=True, frozen=True)
class MeshPaths:
    """Handle on the shared directory tree every agent in the mesh reads and writes."""

    base: Path
    socket_dir: Path

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> MeshPaths:
        settings = settings or get_settings()
        return cls(
            base=Path(settings.base_dir).expanduser().resolve(),
            socket_dir=Path(settings.socket_dir).expanduser().resolve(),
        )

    @property
    def registry(self) -> Path:
        return self.base / "registry"

    @property
    def inbox(self) -> Path:
        return self.base / "inbox"

    @property
    def message_log(self) -> Path:
        return self.base / "messages.jsonl"

    def registration_path(self, name: str) -> Path:
        return self.registry / f"{name}.json"

    def inbox_dir(self, name: str) -> Path:
        return self.inbox / name

    def quarantine_dir(self, name: str) -> Path:
        return self.inbox_dir(name) / QUARANTINE_DIRNAME

    def ensure(self, agent_name: Optional[str] = None) -> None:
        self.registry.mkdir(parents=True, exist_ok=True)
        self.inbox.mkdir(parents=True, exist_ok=True)
        if agent_name:
            self.inbox_dir(agent_name).mkdir(parents=True, exist_ok=True)


def pid_alive(pid: Optional[int]) -> bool:
    """Return True when ``pid`` resolves to a running process."""
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        return False
    try:
        return bool(psutil.pid_exists(pid))
    except Exception:
        return False


def lock_path_for(target: Path) -> Path:
    return target.parent / f"{target.name}{LOCK_SUFFIX}"


def lock_metadata_path(lock_path: Path) -> Path:
    return lock_path.parent / f"{lock_path.name}{LOCK_METADATA_SUFFIX}"


def _read_lock_metadata(metadata_path: Path) -> dict[str, Any]:
    if not metadata_path.exists():
        return {}
    try:
        data = json.loads(metadata_path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def _metadata_pid(metadata: dict[str, Any]) -> int | None:
    pid_val = metadata.get("pid")
    if pid_val is None:
        return None
    with contextlib.suppress(Exception):
        return int(pid_val)
    return None


class RegistrationLock:
    """Cross-process lock around one registry entry.

    Acquisition is a single exclusive-create of ``<target>.lock`` (via
    SoftFileLock). Losers retry every ``retry_seconds`` until
    ``timeout_seconds`` passes, reclaiming the lock immediately when its owner
    is dead or the lock is older than ``stale_timeout_seconds``.
    """

    def __init__(
        self,
        target: Path,
        *,
        timeout_seconds: float = 1.5,
        retry_seconds: float = 0.025,
        stale_timeout_seconds: float = 30.0,
    ) -> None:
        self._path = lock_path_for(Path(target))
        self._lock = SoftFileLock(str(self._path))
        self._timeout = max(float(timeout_seconds), 0.0)
        self._retry = max(float(retry_seconds), 0.001)
        self._stale_timeout = max(float(stale_timeout_seconds), 0.0)
        self._pid = os.getpid()
        self._metadata_path = lock_metadata_path(self._path)
        self._held = False

    @classmethod
    def from_settings(cls, target: Path, settings: Optional[Settings] = None, *, timeout_ms: Optional[int] = None) -> RegistrationLock:
        settings = settings or get_settings()
        timeout = settings.lock.timeout_ms if timeout_ms is None else timeout_ms
        return cls(
            target,
            timeout_seconds=timeout / 1000.0,
            retry_seconds=settings.lock.retry_ms / 1000.0,
            stale_timeout_seconds=settings.lock.stale_seconds,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Try to take the lock; return False once the timeout passes."""
        started = time.monotonic()
        deadline = started + self._timeout
        attempts = 0
        self._path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            attempts += 1
            try:
                self._lock.acquire(timeout=0)
            except Timeout:
                if self._cleanup_if_stale():
                    _logger.info(
                        "file_lock.stale_cleaned",
                        extra={"path": str(self._path), "attempt": attempts},
                    )
                    continue
                if time.monotonic() >= deadline:
                    _logger.warning(
                        "file_lock.timeout",
                        extra={
                            "path": str(self._path),
                            "attempts": attempts,
                            "elapsed_seconds": round(time.monotonic() - started, 3),
                        },
                    )
                    return False
                time.sleep(self._retry)
                continue
            self._held = True
            try:
                self._write_metadata()
            except OSError:
                self.release()
                raise
            if attempts > 1:
                _logger.debug(
                    "file_lock.acquired_after_retry",
                    extra={"path": str(self._path), "attempts": attempts},
                )
            return True

    def release(self) -> None:
        if not self._held:
            return
        with contextlib.suppress(OSError):
            self._metadata_path.unlink(missing_ok=True)
        with contextlib.suppress(OSError):
            self._lock.release(force=True)
        with contextlib.suppress(OSError):
            self._path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: object) -> None:
        self.release()

    def _cleanup_if_stale(self) -> bool:
        """Remove lock and metadata when the lock is stale.

        A lock is stale if its metadata names a dead owner, or if it is older
        than the stale timeout. A lock without metadata may belong to a holder
        that has not written it yet, so only its age counts.
        """
        if not self._path.exists():
            return False
        metadata = _read_lock_metadata(self._metadata_path)
        pid_int = _metadata_pid(metadata)
        now = time.time()
        age: float | None = None
        acquired_ts = metadata.get("acquired_ts")
        if isinstance(acquired_ts, (int, float)):
            age = now - float(acquired_ts)
        else:
            with contextlib.suppress(OSError):
                age = now - self._path.stat().st_mtime

        is_stale = False
        if pid_int is not None and not pid_alive(pid_int):
            is_stale = True
        elif self._stale_timeout > 0 and age is not None and age >= self._stale_timeout:
            is_stale = True

        if not is_stale:
            return False

        with contextlib.suppress(OSError):
            self._path.unlink(missing_ok=True)
        with contextlib.suppress(OSError):
            self._metadata_path.unlink(missing_ok=True)
        return True

    def _write_metadata(self) -> None:
        payload = {
            "pid": self._pid,
            "acquired_ts": time.time(),
        }
        self._metadata_path.write_text(json.dumps(payload), encoding="utf-8")


def with_lock(
    target: Path,
    fn: Callable[[], T],
    *,
    settings: Optional[Settings] = None,
    timeout_ms: Optional[int] = None,
) -> Optional[T]:
    """Run ``fn`` while holding the lock for ``target``; None when the lock was not acquired."""
    lock = RegistrationLock.from_settings(target, settings, timeout_ms=timeout_ms)
    if not lock.acquire():
        return None
    try:
        return fn()
    finally:
        lock.release()


def write_text_atomic(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any:
    """Parse a JSON file, returning None when it is missing, unreadable, or corrupt."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError):
        return None


def append_line(path: Path, line: str) -> None:
    """Append one line with a single write on an O_APPEND descriptor."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = (line.rstrip("\n") + "\n").encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


def collect_lock_status(paths: MeshPaths, settings: Optional[Settings] = None) -> dict[str, Any]:
    """Return structured metadata about registry locks currently on disk."""
    settings = settings or get_settings()
    stale_threshold = settings.lock.stale_seconds
    locks: list[dict[str, Any]] = []
    summary = {"total": 0, "active": 0, "stale": 0, "metadata_missing": 0}

    if paths.registry.exists():
        now = time.time()
        for lock_path in sorted(paths.registry.glob(f"*{LOCK_SUFFIX}"), key=lambda p: p.name):
            metadata_path = lock_metadata_path(lock_path)
            metadata_present = metadata_path.exists()
            info: dict[str, Any] = {
                "path": str(lock_path),
                "agent": lock_path.name[: -len(".json" + LOCK_SUFFIX)] if lock_path.name.endswith(".json" + LOCK_SUFFIX) else lock_path.stem,
                "metadata_present": metadata_present,
            }
            modified_ts: float | None = None
            with contextlib.suppress(OSError):
                modified_ts = lock_path.stat().st_mtime
                info["modified_ts"] = datetime.fromtimestamp(modified_ts, tz=timezone.utc).isoformat()

            metadata = _read_lock_metadata(metadata_path) if metadata_present else {}
            pid_int = _metadata_pid(metadata)
            info["owner_pid"] = pid_int
            info["owner_alive"] = pid_alive(pid_int) if pid_int else False

            acquired_ts = metadata.get("acquired_ts")
            if isinstance(acquired_ts, (int, float)):
                info["acquired_ts"] = datetime.fromtimestamp(acquired_ts, tz=timezone.utc).isoformat()
                info["age_seconds"] = max(0.0, now - float(acquired_ts))
            elif modified_ts is not None:
                info["acquired_ts"] = None
                info["age_seconds"] = max(0.0, now - modified_ts)
            else:
                info["acquired_ts"] = None
                info["age_seconds"] = None

            info["stale_timeout_seconds"] = stale_threshold
            age_val = info["age_seconds"]
            is_stale = False
            if pid_int is not None and not info["owner_alive"]:
                is_stale = True
            elif stale_threshold > 0 and isinstance(age_val, (int, float)) and age_val >= stale_threshold:
                is_stale = True
            info["stale_suspected"] = is_stale
            info["status"] = "stale" if is_stale else "held"

            summary["total"] += 1
            if is_stale:
                summary["stale"] += 1
            else:
                summary["active"] += 1
            if not metadata_present:
                summary["metadata_missing"] += 1
            locks.append(info)

    return {"locks": locks, "summary": summary}
