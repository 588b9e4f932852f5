"""Naming helpers for agents and spawned subagents."""

from __future__ import annotations

import random
import re
from typing import Iterable, Optional

# Top-level agent names are adjective+noun pairs ("SwiftRiver"). Subagent
# callsigns draw deterministically from a separate pair of lists.

ADJECTIVES: Iterable[str] = (
    "Amber",
    "Azure",
    "Bold",
    "Bright",
    "Calm",
    "Cedar",
    "Cobalt",
    "Copper",
    "Gentle",
    "Jade",
    "Lunar",
    "Misty",
    "Quiet",
    "Rapid",
    "Rustic",
    "Silver",
    "Swift",
    "Vivid",
)

NOUNS: Iterable[str] = (
    "Badger",
    "Beacon",
    "Brook",
    "Canyon",
    "Falcon",
    "Glacier",
    "Harbor",
    "Heron",
    "Lantern",
    "Nova",
    "Otter",
    "Pine",
    "Quartz",
    "Raven",
    "Ridge",
    "River",
    "Tiger",
)

CALLSIGN_FIRST_WORDS: tuple[str, ...] = (
    "amber",
    "autumn",
    "bright",
    "calm",
    "clear",
    "dawn",
    "deep",
    "gentle",
    "golden",
    "grand",
    "green",
    "lively",
    "mellow",
    "mighty",
    "quiet",
    "rising",
    "silver",
    "steady",
    "sunny",
    "swift",
    "warm",
    "young",
)

CALLSIGN_SECOND_WORDS: tuple[str, ...] = (
    "Anchor",
    "Breeze",
    "Brook",
    "Cloud",
    "Field",
    "Forest",
    "Garden",
    "Harbor",
    "Hill",
    "Lake",
    "Maple",
    "Meadow",
    "Moon",
    "Ocean",
    "Pine",
    "River",
    "Sparrow",
    "Stone",
    "Sun",
    "Thunder",
    "Valley",
    "Wave",
    "Willow",
)

MAX_CHILD_NAME_LENGTH = 64

_CHILD_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")
_AGENT_NAME_RE = re.compile(r"[^A-Za-z0-9_-]+")
_CALLSIGN_SUFFIX_RE = re.compile(r"-([A-Z][a-z]+[A-Z][A-Za-z]+)$")

_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193


def generate_agent_name() -> str:
    """Return a random adjective+noun combination."""
    adjective = random.choice(tuple(ADJECTIVES))
    noun = random.choice(tuple(NOUNS))
    return f"{adjective}{noun}"


def sanitize_agent_name(value: str) -> Optional[str]:
    """Normalize a user-provided agent name; return None if nothing remains."""
    cleaned = _AGENT_NAME_RE.sub("", value.strip())
    if not cleaned:
        return None
    return cleaned[:128]


def sanitize_child_name(value: str) -> str:
    """Restrict a spawned child's runtime name to ``[A-Za-z0-9_-]`` and 64 chars."""
    return _CHILD_NAME_RE.sub("-", value)[:MAX_CHILD_NAME_LENGTH]


def fnv1a_32(value: str) -> int:
    """32-bit FNV-1a over the UTF-8 bytes of ``value``."""
    digest = _FNV_OFFSET_BASIS
    for byte in value.encode("utf-8"):
        digest ^= byte
        digest = (digest * _FNV_PRIME) & 0xFFFFFFFF
    return digest


def callsign_candidate(run_id: str, index: int, nonce: int) -> str:
    """Deterministic two-word callsign for ``(run_id, index, nonce)``."""
    digest = fnv1a_32(f"{run_id}:{index}:{nonce}")
    first = CALLSIGN_FIRST_WORDS[digest % len(CALLSIGN_FIRST_WORDS)]
    second_index = (digest // len(CALLSIGN_FIRST_WORDS) + nonce) % len(CALLSIGN_SECOND_WORDS)
    second = CALLSIGN_SECOND_WORDS[second_index]
    return f"{first[:1].upper()}{first[1:]}{second}"


def format_agent_display_name(agent_name: str) -> str:
    """Return the trailing callsign of a spawned child's name, or the name unchanged."""
    match = _CALLSIGN_SUFFIX_RE.search(agent_name)
    if match:
        return match.group(1)
    return agent_name
