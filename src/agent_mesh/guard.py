"""Reservation matching and the edit/write conflict guard."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, Optional, Sequence

from .errors import INVALID_PATTERN, MISSING_PATH, CoordinationError
from .models import AgentRegistration, ReservationConflict
from .registry import list_active
from .storage import MeshPaths

__all__ = [
    "GuardDecision",
    "PatternCheck",
    "check_write",
    "conflicts_for",
    "conflicts_in",
    "normalize_reservation_paths",
    "path_matches_reservation",
    "validate_reservation_pattern",
]

BROAD_RESERVATION_PATTERNS = frozenset({".", "/", "./", "..", "../", ""})


def _normalize(value: str) -> str:
    trailing = value.endswith("/")
    normalized = posixpath.normpath(value) if value else ""
    if trailing and not normalized.endswith("/"):
        normalized = f"{normalized}/"
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def path_matches_reservation(file_path: str, pattern: str) -> bool:
    """True when ``file_path`` falls under ``pattern``.

    A pattern ending in ``/`` is a directory boundary: it matches the directory
    itself and anything below it, but never a sibling sharing a textual prefix
    (``src2/x`` does not match ``src/``). Other patterns match exactly.
    """
    normalized_path = _normalize(file_path)
    normalized_pattern = _normalize(pattern)
    if normalized_pattern.endswith("/"):
        return normalized_path.startswith(normalized_pattern) or f"{normalized_path}/" == normalized_pattern
    return normalized_path == normalized_pattern


def conflicts_in(snapshot: Iterable[AgentRegistration], self_name: str, file_path: str) -> list[ReservationConflict]:
    """Reservations held by agents other than ``self_name`` that cover ``file_path``."""
    conflicts: list[ReservationConflict] = []
    for agent in snapshot:
        if agent.name == self_name or not agent.reservations:
            continue
        for reservation in agent.reservations:
            if path_matches_reservation(file_path, reservation.pattern):
                conflicts.append(
                    ReservationConflict(
                        path=file_path,
                        agent=agent.name,
                        pattern=reservation.pattern,
                        reason=reservation.reason,
                        registration=agent,
                    )
                )
    return conflicts


def conflicts_for(paths: MeshPaths, self_name: str, file_path: str) -> list[ReservationConflict]:
    return conflicts_in(list_active(paths, self_name), self_name, file_path)


def normalize_reservation_paths(raw_paths: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for raw in raw_paths:
        candidate = raw.strip()
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        cleaned.append(candidate)
    return cleaned


@dataclass(slots=True, frozen=True)
class PatternCheck:
    pattern: str
    warning: Optional[str] = None


def validate_reservation_pattern(pattern: str) -> PatternCheck:
    """Reject empty patterns; warn about patterns that lock out most of the tree."""
    if not pattern or not pattern.strip():
        raise CoordinationError(INVALID_PATTERN, "Reservation pattern must not be empty.", data={"pattern": pattern})

    stripped = pattern.rstrip("/")
    if stripped in BROAD_RESERVATION_PATTERNS or pattern in BROAD_RESERVATION_PATTERNS:
        return PatternCheck(
            pattern,
            f'"{pattern}" is very broad and will block most file operations for other agents.',
        )

    segments = [segment for segment in stripped.split("/") if segment]
    if len(segments) == 1 and pattern.endswith("/"):
        return PatternCheck(
            pattern,
            f'"{pattern}" covers an entire top-level directory. Consider reserving a more specific path.',
        )
    return PatternCheck(pattern)


@dataclass(slots=True)
class GuardDecision:
    allowed: bool
    reason: Optional[str] = None
    conflicts: Sequence[ReservationConflict] = field(default_factory=tuple)


def _describe_block(file_path: str, conflict: ReservationConflict) -> str:
    cwd = conflict.registration.cwd
    folder = PurePosixPath(cwd).name or cwd
    lines = [
        file_path,
        f"Reserved by: {conflict.agent} (in {folder})",
        f"Reservation pattern: {conflict.pattern}",
    ]
    if conflict.reason:
        lines.append(f'Reason: "{conflict.reason}"')
    lines.append("")
    lines.append(f'Coordinate via: agent-mesh send {conflict.agent} "..."')
    return "\n".join(lines)


def check_write(paths: MeshPaths, agent_name: str, file_path: Optional[str]) -> GuardDecision:
    """Decide whether ``agent_name`` may edit or write ``file_path`` right now."""
    candidate = (file_path or "").strip()
    if not candidate:
        raise CoordinationError(MISSING_PATH, "A file path is required to check reservations.")
    conflicts = conflicts_for(paths, agent_name, candidate)
    if not conflicts:
        return GuardDecision(allowed=True)
    return GuardDecision(allowed=False, reason=_describe_block(candidate, conflicts[0]), conflicts=tuple(conflicts))
