"""File-backed agent registry: at most one live owner per agent name."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, TypeVar

from pydantic import ValidationError

from .config import Settings
from .models import AgentRegistration, AgentRole, FileReservation, RegistrationOwner, utcnow_iso
from .storage import LOCK_METADATA_SUFFIX, MeshPaths, pid_alive, read_json, with_lock, write_text_atomic

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lock wait for pruning, which runs on the read path.
PRUNE_LOCK_TIMEOUT_MS = 250
MAX_NAME_SUFFIX = 50


def parse_registration(raw: object) -> Optional[AgentRegistration]:
    """Validate a decoded registration payload; None when it is malformed."""
    if not isinstance(raw, dict):
        return None
    try:
        registration = AgentRegistration.model_validate(raw)
    except ValidationError:
        return None
    if not registration.name:
        return None
    return registration


def read_registration(path: Path) -> Optional[AgentRegistration]:
    return parse_registration(read_json(path))


def _write_registration(path: Path, registration: AgentRegistration) -> bool:
    try:
        write_text_atomic(path, registration.to_json())
    except OSError as exc:
        _logger.warning(
            "registry.write_failed",
            extra={"path": str(path), "agent": registration.name, "error": str(exc)},
        )
        return False
    return True


def register(paths: MeshPaths, registration: AgentRegistration, *, settings: Optional[Settings] = None) -> bool:
    """Claim ``registration.name``; False when another live owner holds it or the lock timed out."""
    paths.ensure(registration.name)
    target = paths.registration_path(registration.name)

    def _claim() -> bool:
        existing = read_registration(target)
        if existing is not None and not existing.same_owner(registration) and pid_alive(existing.pid):
            _logger.info(
                "registry.name_taken",
                extra={"agent": registration.name, "owner_pid": existing.pid},
            )
            return False
        return _write_registration(target, registration)

    result = with_lock(target, _claim, settings=settings)
    if result is None:
        _logger.warning("registry.register_lock_timeout", extra={"agent": registration.name})
        return False
    return result


def heartbeat(paths: MeshPaths, registration: AgentRegistration, *, settings: Optional[Settings] = None) -> bool:
    """Refresh our record unless a different live owner has taken the name.

    Best effort: a lock timeout is logged and reported as False so the caller's
    turn keeps going.
    """
    paths.registry.mkdir(parents=True, exist_ok=True)
    target = paths.registration_path(registration.name)

    def _refresh() -> bool:
        existing = read_registration(target)
        if existing is not None and not existing.same_owner(registration) and pid_alive(existing.pid):
            _logger.warning(
                "registry.heartbeat_ownership_lost",
                extra={"agent": registration.name, "owner_pid": existing.pid},
            )
            return False
        return _write_registration(target, registration)

    result = with_lock(target, _refresh, settings=settings)
    if result is None:
        _logger.info("registry.heartbeat_skipped", extra={"agent": registration.name})
        return False
    return result


def unregister(
    paths: MeshPaths,
    name: str,
    owner: Optional[RegistrationOwner] = None,
    *,
    settings: Optional[Settings] = None,
) -> bool:
    """Delete ``name``'s record under its lock.

    With an owner token the record is removed only if its pid (and session,
    when the token carries one) still match once the lock is held. A lock
    timeout leaves the record in place and returns False.
    """
    target = paths.registration_path(name)

    def _remove() -> bool:
        if owner is not None:
            existing = read_registration(target)
            if existing is None or not owner.matches(existing.owner()):
                return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            _logger.warning("registry.unregister_failed", extra={"agent": name, "error": str(exc)})
            return False
        return True

    result = with_lock(target, _remove, settings=settings)
    if result is None:
        _logger.warning("registry.unregister_lock_timeout", extra={"agent": name})
        return False
    return result


def update_reservations(
    paths: MeshPaths,
    name: str,
    mutate: Callable[[ReservationBook], T],
    *,
    owner: Optional[RegistrationOwner] = None,
    settings: Optional[Settings] = None,
) -> Optional[tuple[AgentRegistration, T]]:
    """Apply ``mutate`` to ``name``'s stored reservations and write the result back.

    The read, the change and the write all happen under the registration lock,
    so a concurrent heartbeat or reservation change is never overwritten with
    a stale copy. Returns None when the record is missing, belongs to another
    owner, could not be written, or the lock timed out.
    """
    target = paths.registration_path(name)

    def _apply() -> Optional[tuple[AgentRegistration, T]]:
        existing = read_registration(target)
        if existing is None:
            return None
        if owner is not None and not owner.matches(existing.owner()):
            _logger.warning(
                "registry.reservations_ownership_lost",
                extra={"agent": name, "owner_pid": existing.pid},
            )
            return None
        book = ReservationBook(list(existing.reservations or []))
        outcome = mutate(book)
        updated = existing.model_copy(update={"reservations": book.snapshot(), "last_seen_at": utcnow_iso()})
        if not _write_registration(target, updated):
            return None
        return updated, outcome

    if not target.exists():
        return None
    result = with_lock(target, _apply, settings=settings)
    if result is None:
        _logger.info("registry.reservations_not_updated", extra={"agent": name})
    return result


def _remove_if_still_dead(target: Path, observed: AgentRegistration, settings: Optional[Settings]) -> None:
    def _prune() -> bool:
        current = read_registration(target)
        if current is None or not current.same_owner(observed) or pid_alive(current.pid):
            return False
        target.unlink(missing_ok=True)
        _logger.info("registry.pruned_dead", extra={"agent": observed.name, "pid": observed.pid})
        return True

    try:
        with_lock(target, _prune, settings=settings, timeout_ms=PRUNE_LOCK_TIMEOUT_MS)
    except OSError as exc:
        _logger.debug("registry.prune_failed", extra={"path": str(target), "error": str(exc)})


def _remove_if_still_malformed(target: Path, settings: Optional[Settings]) -> None:
    def _discard() -> bool:
        if not target.exists() or read_registration(target) is not None:
            return False
        target.unlink(missing_ok=True)
        _logger.warning("registry.discarded_malformed", extra={"path": str(target)})
        return True

    try:
        with_lock(target, _discard, settings=settings, timeout_ms=PRUNE_LOCK_TIMEOUT_MS)
    except OSError as exc:
        _logger.debug("registry.discard_failed", extra={"path": str(target), "error": str(exc)})


def list_active(
    paths: MeshPaths,
    exclude_name: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
) -> list[AgentRegistration]:
    """Live registrations sorted by name, pruning dead and malformed entries along the way."""
    paths.registry.mkdir(parents=True, exist_ok=True)
    agents: list[AgentRegistration] = []
    try:
        entries = sorted(paths.registry.iterdir(), key=lambda p: p.name)
    except OSError:
        return agents

    for entry in entries:
        if not entry.name.endswith(".json") or entry.name.endswith(LOCK_METADATA_SUFFIX):
            continue
        registration = read_registration(entry)
        if registration is None:
            _remove_if_still_malformed(entry, settings)
            continue
        if not pid_alive(registration.pid):
            _remove_if_still_dead(entry, registration, settings)
            continue
        if exclude_name and registration.name == exclude_name:
            continue
        agents.append(registration)

    agents.sort(key=lambda agent: agent.name)
    return agents


def get_agent(paths: MeshPaths, name: str, *, settings: Optional[Settings] = None) -> Optional[AgentRegistration]:
    for agent in list_active(paths, settings=settings):
        if agent.name == name:
            return agent
    return None


def resolve_role(depth: int, has_spawned: bool) -> Optional[AgentRole]:
    if has_spawned:
        return "orchestrator"
    if depth > 0:
        return "subagent"
    return None


def build_registration(
    name: str,
    *,
    session_id: str,
    model: str,
    cwd: Optional[str] = None,
    session_file: Optional[str] = None,
    role: Optional[AgentRole] = None,
    reservations: Optional[list[FileReservation]] = None,
    pid: Optional[int] = None,
    started_at: Optional[str] = None,
) -> AgentRegistration:
    now = utcnow_iso()
    return AgentRegistration(
        name=name,
        pid=os.getpid() if pid is None else pid,
        session_id=session_id,
        session_file=session_file,
        cwd=cwd or os.getcwd(),
        model=model,
        started_at=started_at or now,
        last_seen_at=now,
        role=role,
        reservations=reservations or None,
    )


def claim_agent_name(
    paths: MeshPaths,
    build: Callable[[str], AgentRegistration],
    preferred: str,
    *,
    explicit: bool = False,
    settings: Optional[Settings] = None,
) -> Optional[str]:
    """Register under ``preferred``, falling back to ``preferred2..preferred50`` unless the name was forced."""
    candidates: Iterable[str] = [preferred]
    if not explicit:
        candidates = [preferred, *(f"{preferred}{n}" for n in range(2, MAX_NAME_SUFFIX + 1))]
    for candidate in candidates:
        if register(paths, build(candidate), settings=settings):
            return candidate
    return None


@dataclass
class ReservationBook:
    """This process's own reservations, mirrored into its registration on every change."""

    entries: list[FileReservation] = field(default_factory=list)

    def reserve(self, patterns: Iterable[str], reason: Optional[str] = None) -> list[FileReservation]:
        cleaned_reason = reason.strip() if reason and reason.strip() else None
        since = utcnow_iso()
        added: list[FileReservation] = []
        for pattern in patterns:
            self.entries = [entry for entry in self.entries if entry.pattern != pattern]
            reservation = FileReservation(pattern=pattern, since=since, reason=cleaned_reason)
            self.entries.append(reservation)
            added.append(reservation)
        return added

    def release(self, patterns: Optional[Iterable[str]] = None) -> list[str]:
        if patterns is None:
            released = [entry.pattern for entry in self.entries]
            self.entries = []
            return released
        wanted = set(patterns)
        released = [entry.pattern for entry in self.entries if entry.pattern in wanted]
        self.entries = [entry for entry in self.entries if entry.pattern not in wanted]
        return released

    def snapshot(self) -> Optional[list[FileReservation]]:
        return list(self.entries) or None
