"""Pydantic models for everything the mesh persists on disk, plus derived records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr

AgentRole = Literal["subagent", "orchestrator"]
MessageKind = Literal["direct", "broadcast"]

# Persisted JSON uses camelCase keys; strict field types keep `"pid": "12"` or
# `"urgent": "yes"` from being coerced into a valid record.
_WIRE_CONFIG = ConfigDict(populate_by_name=True, extra="ignore")


def utcnow_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class FileReservation(BaseModel):
    model_config = _WIRE_CONFIG

    pattern: StrictStr
    since: StrictStr
    reason: Optional[StrictStr] = None


class AgentRegistration(BaseModel):
    """One live agent's record in the registry, keyed by ``name``."""

    model_config = _WIRE_CONFIG

    name: StrictStr
    pid: StrictInt
    session_id: StrictStr = Field(alias="sessionId")
    session_file: Optional[StrictStr] = Field(default=None, alias="sessionFile")
    cwd: StrictStr
    model: StrictStr
    started_at: StrictStr = Field(alias="startedAt")
    last_seen_at: StrictStr = Field(alias="lastSeenAt")
    role: Optional[AgentRole] = None
    reservations: Optional[list[FileReservation]] = None

    def owner(self) -> RegistrationOwner:
        return RegistrationOwner(pid=self.pid, session_id=self.session_id)

    def same_owner(self, other: AgentRegistration) -> bool:
        return self.pid == other.pid and self.session_id == other.session_id

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2) + "\n"


@dataclass(slots=True, frozen=True)
class RegistrationOwner:
    """Ownership token for guarded unregister; ``session_id=None`` matches on pid only."""

    pid: int
    session_id: Optional[str] = None

    def matches(self, current: RegistrationOwner) -> bool:
        if current.pid != self.pid:
            return False
        return self.session_id is None or current.session_id == self.session_id


class InboxMessage(BaseModel):
    """A single queued delivery sitting in a recipient's inbox directory."""

    model_config = _WIRE_CONFIG

    id: StrictStr
    sender: StrictStr = Field(alias="from")
    recipient: StrictStr = Field(alias="to")
    text: StrictStr
    kind: MessageKind
    timestamp: StrictStr
    urgent: StrictBool = False
    reply_to: Optional[StrictStr] = Field(default=None, alias="replyTo")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class MessageLogEvent(InboxMessage):
    """Append-only audit record; broadcasts carry ``to="all"`` and the resolved recipients."""

    recipients: Optional[list[str]] = None

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        if self.recipients is None:
            payload.pop("recipients", None)
        return payload


class DeliveryMode(str, Enum):
    QUEUED = "queue"
    INTERRUPT = "interrupt"


@dataclass(slots=True, frozen=True)
class ReservationConflict:
    path: str
    agent: str
    pattern: str
    reason: Optional[str]
    registration: AgentRegistration


@dataclass(slots=True)
class BroadcastResult:
    message: InboxMessage
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SpawnResult:
    """Outcome of one child launch. Built while the child runs, then frozen by convention."""

    agent: str
    name: str
    task: str
    exit_code: int
    output: str
    working_directory: str
    launch_args: list[str]
    launch_command: str
    launch_prompt: str
    launch_env: dict[str, str]
    launch_delay_ms: int = 0
    error: Optional[str] = None
    session_id: Optional[str] = None
    resolved_model: Optional[str] = None
    resolved_tools: Optional[list[str]] = None
    coordinator: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.error

    def to_payload(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "name": self.name,
            "task": self.task,
            "exitCode": self.exit_code,
            "output": self.output,
            "error": self.error,
            "sessionId": self.session_id,
            "workingDirectory": self.working_directory,
            "launchArgs": list(self.launch_args),
            "launchCommand": self.launch_command,
            "launchPrompt": self.launch_prompt,
            "launchEnv": dict(self.launch_env),
            "launchDelayMs": self.launch_delay_ms,
            "resolvedModel": self.resolved_model,
            "resolvedTools": list(self.resolved_tools) if self.resolved_tools is not None else None,
            "coordinator": self.coordinator,
        }
