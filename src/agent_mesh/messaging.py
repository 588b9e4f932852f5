"""Per-agent inbox queues, the shared message log, and inbox watching.

Delivery model:
- Each message is one JSON file in the recipient's inbox, written temp-then-rename
- Filenames start with a millisecond timestamp, so lexical order is arrival order
- Draining deletes a file only after the handler returns; a raising handler sees it again next drain
- Malformed inbox files are moved to ``.invalid/`` instead of being retried forever
- Every send appends exactly one line to ``messages.jsonl`` (best effort, O_APPEND)
- Watchers learn about new inbox files from watchdog events, then drain on the event loop
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import os
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .config import get_settings
from .errors import (
    DELIVERY_FAILED,
    EMPTY_MESSAGE,
    NO_ACTIVE_RECIPIENTS,
    SELF_TARGET,
    TARGET_NOT_ACTIVE,
    CoordinationError,
)
from .models import BroadcastResult, DeliveryMode, InboxMessage, MessageLogEvent, utcnow_iso
from .registry import get_agent, list_active
from .storage import QUARANTINE_DIRNAME, MeshPaths, append_line, read_json, write_text_atomic
from .utils import format_agent_display_name

_logger = logging.getLogger(__name__)

FEED_TEXT_LIMIT = 240
BROADCAST_TARGET = "all"

InboxHandler = Callable[[InboxMessage], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_inbox_message(raw: object) -> Optional[InboxMessage]:
    if not isinstance(raw, dict):
        return None
    try:
        return InboxMessage.model_validate(raw)
    except ValidationError:
        return None


def enqueue_inbox_message(paths: MeshPaths, target_agent: str, message: InboxMessage) -> Path:
    """Write ``message`` into ``target_agent``'s inbox; raises OSError when the inbox is unwritable."""
    inbox_dir = paths.inbox_dir(target_agent)
    inbox_dir.mkdir(parents=True, exist_ok=True)
    file_path = inbox_dir / f"{_now_ms()}-{os.getpid()}-{uuid.uuid4()}.json"
    write_text_atomic(file_path, json.dumps(message.to_wire(), indent=2))
    return file_path


def process_inbox(paths: MeshPaths, self_name: str, handler: InboxHandler) -> int:
    """Hand every pending inbox message to ``handler`` in filename order.

    Returns how many messages were delivered (handler returned) and removed.
    """
    inbox_dir = paths.inbox_dir(self_name)
    inbox_dir.mkdir(parents=True, exist_ok=True)
    try:
        files = sorted(entry.name for entry in inbox_dir.iterdir() if entry.name.endswith(".json") and entry.is_file())
    except OSError:
        return 0

    delivered = 0
    for filename in files:
        full_path = inbox_dir / filename
        message = parse_inbox_message(read_json(full_path))
        if message is None:
            _quarantine(paths, self_name, full_path)
            continue
        try:
            handler(message)
        except Exception:
            _logger.exception(
                "inbox.handler_failed",
                extra={"agent": self_name, "file": filename, "message_id": message.id},
            )
            continue
        delivered += 1
        with contextlib.suppress(FileNotFoundError):
            full_path.unlink()
    return delivered


def _quarantine(paths: MeshPaths, self_name: str, full_path: Path) -> None:
    quarantine_dir = paths.quarantine_dir(self_name)
    try:
        quarantine_dir.mkdir(parents=True, exist_ok=True)
        os.replace(full_path, quarantine_dir / f"{_now_ms()}-{full_path.name}")
    except OSError as exc:
        _logger.warning(
            "inbox.quarantine_failed",
            extra={"agent": self_name, "file": full_path.name, "error": str(exc)},
        )
        return
    _logger.warning("inbox.quarantined", extra={"agent": self_name, "file": full_path.name})


def append_message_log_event(paths: MeshPaths, event: MessageLogEvent) -> None:
    try:
        append_line(paths.message_log, json.dumps(event.to_wire()))
    except OSError as exc:
        _logger.warning("message_log.append_failed", extra={"event_id": event.id, "error": str(exc)})


def read_message_log(paths: MeshPaths) -> list[MessageLogEvent]:
    """Parse the shared log, skipping lines that are not valid events."""
    try:
        content = paths.message_log.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return []
    events: list[MessageLogEvent] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except ValueError:
            continue
        if not isinstance(raw, dict):
            continue
        try:
            events.append(MessageLogEvent.model_validate(raw))
        except ValidationError:
            continue
    return events


def tail(paths: MeshPaths, limit: int) -> list[MessageLogEvent]:
    if limit <= 0:
        return []
    return read_message_log(paths)[-limit:]


def thread(paths: MeshPaths, agent_a: str, agent_b: str, limit: int) -> list[MessageLogEvent]:
    """Direct messages exchanged between exactly ``agent_a`` and ``agent_b``, newest ``limit``."""
    if limit <= 0:
        return []
    events = [
        event
        for event in read_message_log(paths)
        if event.kind == "direct"
        and (
            (event.sender == agent_a and event.recipient == agent_b)
            or (event.sender == agent_b and event.recipient == agent_a)
        )
    ]
    return events[-limit:]


def send_direct(
    paths: MeshPaths,
    sender: str,
    recipient: str,
    text: str,
    reply_to: Optional[str] = None,
    urgent: bool = False,
) -> InboxMessage:
    trimmed = text.strip()
    if not trimmed:
        raise CoordinationError(EMPTY_MESSAGE, "Message is empty")
    if recipient == sender:
        raise CoordinationError(SELF_TARGET, "Cannot send direct message to yourself")
    if get_agent(paths, recipient) is None:
        raise CoordinationError(TARGET_NOT_ACTIVE, f"Agent '{recipient}' is not active", data={"to": recipient})

    message = InboxMessage(
        id=str(uuid.uuid4()),
        sender=sender,
        recipient=recipient,
        text=trimmed,
        kind="direct",
        timestamp=utcnow_iso(),
        urgent=urgent,
        reply_to=reply_to,
    )
    try:
        enqueue_inbox_message(paths, recipient, message)
    except OSError as exc:
        raise CoordinationError(
            DELIVERY_FAILED,
            f"Failed to send direct message to '{recipient}': {exc}",
            data={"to": recipient},
        ) from exc
    append_message_log_event(paths, MessageLogEvent(**message.model_dump()))
    return message


def send_broadcast(paths: MeshPaths, sender: str, text: str, urgent: bool = False) -> BroadcastResult:
    """Deliver ``text`` to every live peer; one recipient failing never blocks the others."""
    trimmed = text.strip()
    if not trimmed:
        raise CoordinationError(EMPTY_MESSAGE, "Message is empty")
    recipients = [agent.name for agent in list_active(paths, sender)]
    if not recipients:
        raise CoordinationError(NO_ACTIVE_RECIPIENTS, "No active recipients")

    message_id = str(uuid.uuid4())
    timestamp = utcnow_iso()
    template = InboxMessage(
        id=message_id,
        sender=sender,
        recipient=BROADCAST_TARGET,
        text=trimmed,
        kind="broadcast",
        timestamp=timestamp,
        urgent=urgent,
    )
    result = BroadcastResult(message=template)
    for target in recipients:
        try:
            enqueue_inbox_message(paths, target, template.model_copy(update={"recipient": target}))
        except OSError as exc:
            _logger.warning(
                "broadcast.delivery_failed",
                extra={"message_id": message_id, "to": target, "error": str(exc)},
            )
            result.failed.append(target)
            continue
        result.delivered.append(target)

    append_message_log_event(
        paths,
        MessageLogEvent(**template.model_dump(), recipients=recipients),
    )
    return result


def delivery_mode_for(message: InboxMessage) -> DeliveryMode:
    return DeliveryMode.INTERRUPT if message.urgent else DeliveryMode.QUEUED


def format_inbox_delivery(message: InboxMessage) -> str:
    """Text handed to the host runtime, e.g. ``Urgent direct message from SwiftRiver:``."""
    urgency = "Urgent " if message.urgent else ""
    label = format_agent_display_name(message.sender)
    return f"{urgency}{message.kind} message from {label}:\n\n{message.text}"


def _clock(timestamp: str) -> str:
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return "--:--"
    return parsed.astimezone().strftime("%H:%M")


def format_message_event(event: MessageLogEvent) -> str:
    """One-line feed rendering: ``HH:MM [urgent] from -> to: text``."""
    text = event.text if len(event.text) <= FEED_TEXT_LIMIT else f"{event.text[: FEED_TEXT_LIMIT - 3]}..."
    priority = " [urgent]" if event.urgent else ""
    return f"{_clock(event.timestamp)}{priority} {event.sender} -> {event.recipient}: {text}"


def normalize_limit(raw: Any, fallback: int = 20, maximum: int = 500) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return fallback
    return max(1, min(maximum, math.floor(raw)))


DrainHook = Callable[[], Union[None, Awaitable[None]]]


class _InboxEventHandler(FileSystemEventHandler):
    """Forwards inbox file arrivals from the observer thread to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, wake: Callable[[], None]) -> None:
        self._loop = loop
        self._wake = wake

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writes land as a rename of the temp file onto the final name.
        if not event.is_directory:
            self._forward(event.dest_path)

    def _forward(self, raw_path: str | bytes) -> None:
        path = Path(os.fsdecode(raw_path))
        if path.suffix != ".json" or QUARANTINE_DIRNAME in path.parts:
            return
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(self._wake)


class InboxWatcher:
    """Watches one agent's inbox and drains it on the event loop.

    A watchdog observer reports new inbox files; the first event wakes the
    drain task, which waits ``debounce_ms`` so a burst of arrivals drains once.
    Draining always happens on the loop, one pass at a time. ``notify()`` lets
    in-process senders wake the watcher without a filesystem event.

    Usage:
        watcher = InboxWatcher(paths, "SwiftRiver", handler)
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        paths: MeshPaths,
        agent_name: str,
        handler: InboxHandler,
        *,
        debounce_ms: Optional[float] = None,
        on_drained: Optional[DrainHook] = None,
    ) -> None:
        self._paths = paths
        self._agent_name = agent_name
        self._handler = handler
        if debounce_ms is None:
            debounce_ms = get_settings().watch_debounce_ms
        self._debounce = max(debounce_ms, 0.0) / 1000.0
        self._on_drained = on_drained
        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self._observer: Optional[BaseObserver] = None
        self._stopped = False
        self._drain_lock = asyncio.Lock()
        self.delivered = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopped = False
        self._wake = asyncio.Event()
        inbox_dir = self._paths.inbox_dir(self._agent_name)
        inbox_dir.mkdir(parents=True, exist_ok=True)

        # Observe before the first drain so nothing lands unseen in between.
        observer = Observer()
        observer.schedule(
            _InboxEventHandler(asyncio.get_running_loop(), self._wake.set),
            str(inbox_dir),
            recursive=False,
        )
        observer.daemon = True
        observer.start()
        self._observer = observer
        _logger.debug("inbox_watcher.started", extra={"agent": self._agent_name, "path": str(inbox_dir)})

        await self.drain_now()
        self._task = asyncio.create_task(self._watch_loop())

    async def stop(self, timeout_seconds: float = 5.0) -> None:
        self._stopped = True
        await self._stop_observer(timeout_seconds)
        if self._task is None:
            return
        if self._wake is not None:
            self._wake.set()
        try:
            async with asyncio.timeout(timeout_seconds):
                await self._task
        except TimeoutError:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _stop_observer(self, timeout_seconds: float) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        await asyncio.to_thread(observer.join, timeout_seconds)

    def notify(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def drain_now(self) -> int:
        async with self._drain_lock:
            count = process_inbox(self._paths, self._agent_name, self._handler)
            self.delivered += count
        if self._on_drained is not None:
            try:
                outcome = self._on_drained()
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                _logger.exception("inbox_watcher.on_drained_failed", extra={"agent": self._agent_name})
        return count

    async def _watch_loop(self) -> None:
        assert self._wake is not None
        while not self._stopped:
            await self._wake.wait()
            if self._stopped:
                break
            if self._debounce:
                await asyncio.sleep(self._debounce)
            # Events that arrived during the debounce are covered by this drain.
            self._wake.clear()
            try:
                await self.drain_now()
            except Exception:
                _logger.exception("inbox_watcher.drain_failed", extra={"agent": self._agent_name})
