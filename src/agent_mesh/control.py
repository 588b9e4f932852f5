"""Client for a live session's control socket (newline-delimited JSON RPC)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog

from .errors import RemoteControlError

logger = structlog.get_logger("agent_mesh.control")

DEFAULT_REACHABILITY_TIMEOUT_MS = 500
READ_LIMIT = 16 * 1024 * 1024


@dataclass(slots=True, frozen=True)
class RemoteTurnResult:
    assistant_text: str
    turn_index: Optional[int] = None


def socket_path_for(session_id: str, socket_dir: Path | str) -> Path:
    return Path(socket_dir) / f"{session_id}.sock"


def _correlation_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()


async def is_reachable(
    session_id: str,
    socket_dir: Path | str,
    timeout_ms: int = DEFAULT_REACHABILITY_TIMEOUT_MS,
) -> bool:
    """True only if the session's socket accepts a connection within ``timeout_ms``."""
    path = socket_path_for(session_id, socket_dir)
    try:
        _, writer = await asyncio.wait_for(asyncio.open_unix_connection(str(path)), timeout=timeout_ms / 1000.0)
    except (OSError, TimeoutError):
        return False
    await _close(writer)
    return True


def _turn_result(data: Any) -> RemoteTurnResult:
    data = data if isinstance(data, dict) else {}
    message = data.get("message") if isinstance(data.get("message"), dict) else {}
    content = message.get("content")
    turn_index = data.get("turnIndex")
    return RemoteTurnResult(
        assistant_text=content if isinstance(content, str) else "",
        turn_index=turn_index if isinstance(turn_index, int) and not isinstance(turn_index, bool) else None,
    )


async def _exchange(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, message: str) -> RemoteTurnResult:
    send_id = _correlation_id("send")
    sub_id = _correlation_id("sub")
    writer.write((json.dumps({"type": "subscribe", "event": "turn_end", "id": sub_id}) + "\n").encode("utf-8"))
    writer.write((json.dumps({"type": "send", "message": message, "mode": "steer", "id": send_id}) + "\n").encode("utf-8"))
    await writer.drain()

    send_acked = False
    pending_turn_end: Any = None
    while True:
        try:
            raw = await reader.readline()
        except ValueError as exc:
            raise RemoteControlError(
                "Remote control response exceeded the read limit", data={"limit": READ_LIMIT}
            ) from exc
        if not raw:
            raise RemoteControlError("Remote control socket closed before response")
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue

        if parsed.get("type") == "response":
            if parsed.get("command") == "send" and parsed.get("id") == send_id:
                if not parsed.get("success"):
                    raise RemoteControlError(
                        parsed.get("error") or "Remote session rejected message",
                        data={"id": send_id},
                    )
                send_acked = True
                if pending_turn_end is not None:
                    return _turn_result(pending_turn_end)
            continue

        if parsed.get("type") == "event" and parsed.get("event") == "turn_end":
            data = parsed.get("data") or {}
            # A turn can end before our send is acknowledged; hold it until the ack arrives.
            if not send_acked:
                pending_turn_end = data
                continue
            return _turn_result(data)


async def send_and_await_turn_end(
    session_id: str,
    message: str,
    socket_dir: Path | str,
    wait_ms: int,
) -> RemoteTurnResult:
    """Steer ``message`` into a live session and wait for the turn it triggers to finish."""
    path = socket_path_for(session_id, socket_dir)
    writer: Optional[asyncio.StreamWriter] = None

    async def _run() -> RemoteTurnResult:
        nonlocal writer
        try:
            reader, writer = await asyncio.open_unix_connection(str(path), limit=READ_LIMIT)
        except OSError as exc:
            raise RemoteControlError(str(exc), data={"socket": str(path)}) from exc
        return await _exchange(reader, writer, message)

    try:
        result = await asyncio.wait_for(_run(), timeout=wait_ms / 1000.0)
    except TimeoutError:
        logger.info("control.turn_timeout", session_id=session_id, wait_ms=wait_ms)
        raise RemoteControlError("Timed out waiting for remote turn completion", data={"sessionId": session_id}) from None
    except OSError as exc:
        raise RemoteControlError(str(exc) or "Remote control socket closed before response") from exc
    finally:
        if writer is not None:
            await _close(writer)
    logger.debug("control.turn_completed", session_id=session_id, turn_index=result.turn_index)
    return result
