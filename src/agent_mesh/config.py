"""Mesh configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI/tests) falls back to an empty repository that only reads os.environ.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class LockSettings:
    """Cross-process registry lock tuning."""

    timeout_ms: int
    retry_ms: int
    stale_seconds: float


@dataclass(slots=True, frozen=True)
class SpawnSettings:
    """Subagent spawn limits and launch defaults."""

    max_parallel: int
    max_concurrency: int
    default_max_depth: int
    agent_binary: str
    extension_path: str | None


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level mesh settings."""

    base_dir: str
    socket_dir: str
    lock: LockSettings
    spawn: SpawnSettings
    watch_debounce_ms: int
    message_history_limit: int
    log_level: str
    log_json_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached mesh settings."""
    base_dir = _decouple_config("AGENT_MESH_DIR", default="~/.agent_mesh").strip() or "~/.agent_mesh"
    socket_dir = _decouple_config("AGENT_MESH_SOCKET_DIR", default="").strip() or str(Path(base_dir) / "sockets")

    lock_settings = LockSettings(
        timeout_ms=max(0, _int(_decouple_config("LOCK_TIMEOUT_MS", default="1500"), default=1500)),
        retry_ms=max(1, _int(_decouple_config("LOCK_RETRY_MS", default="25"), default=25)),
        stale_seconds=max(0.0, _float(_decouple_config("LOCK_STALE_SECONDS", default="30"), default=30.0)),
    )

    spawn_settings = SpawnSettings(
        max_parallel=max(1, _int(_decouple_config("SUBAGENT_MAX_PARALLEL", default="8"), default=8)),
        max_concurrency=max(1, _int(_decouple_config("SUBAGENT_MAX_CONCURRENCY", default="4"), default=4)),
        default_max_depth=max(0, _int(_decouple_config("SUBAGENT_DEFAULT_MAX_DEPTH", default="2"), default=2)),
        agent_binary=_decouple_config("AGENT_BINARY", default="pi").strip() or "pi",
        extension_path=_decouple_config("AGENT_EXTENSION_PATH", default="").strip() or None,
    )

    return Settings(
        base_dir=base_dir,
        socket_dir=socket_dir,
        lock=lock_settings,
        spawn=spawn_settings,
        watch_debounce_ms=max(0, _int(_decouple_config("WATCH_DEBOUNCE_MS", default="40"), default=40)),
        message_history_limit=max(1, _int(_decouple_config("MESSAGE_HISTORY_LIMIT", default="400"), default=400)),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
