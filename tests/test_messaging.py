import asyncio
import json
import shutil
import time

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileMovedEvent

from agent_mesh.errors import (
    DELIVERY_FAILED,
    EMPTY_MESSAGE,
    NO_ACTIVE_RECIPIENTS,
    SELF_TARGET,
    TARGET_NOT_ACTIVE,
    CoordinationError,
)
from agent_mesh.messaging import (
    FEED_TEXT_LIMIT,
    InboxWatcher,
    _InboxEventHandler,
    delivery_mode_for,
    enqueue_inbox_message,
    format_inbox_delivery,
    format_message_event,
    normalize_limit,
    process_inbox,
    read_message_log,
    send_broadcast,
    send_direct,
    tail,
    thread,
)
from agent_mesh.models import DeliveryMode, InboxMessage, MessageLogEvent
from agent_mesh.registry import build_registration, register


def _join(mesh, *names):
    for name in names:
        assert register(mesh, build_registration(name, session_id=f"{name}-s", model="m", cwd="/work"))


def _drain(mesh, name):
    received: list[InboxMessage] = []
    process_inbox(mesh, name, received.append)
    return received


def test_send_direct_delivers_and_logs(mesh):
    _join(mesh, "Alpha", "Beta")
    message = send_direct(mesh, "Alpha", "Beta", "  ready for review  ", reply_to="m-1", urgent=True)
    assert message.text == "ready for review"

    inbox_files = list(mesh.inbox_dir("Beta").glob("*.json"))
    assert len(inbox_files) == 1
    raw = json.loads(inbox_files[0].read_text(encoding="utf-8"))
    assert raw["from"] == "Alpha"
    assert raw["to"] == "Beta"
    assert raw["kind"] == "direct"
    assert raw["replyTo"] == "m-1"
    assert raw["urgent"] is True

    events = read_message_log(mesh)
    assert [(e.id, e.sender, e.recipient) for e in events] == [(message.id, "Alpha", "Beta")]
    assert events[0].recipients is None


@pytest.mark.parametrize(
    ("sender", "recipient", "text", "error_type", "message"),
    [
        ("Alpha", "Beta", "   ", EMPTY_MESSAGE, "Message is empty"),
        ("Alpha", "Alpha", "hi", SELF_TARGET, "Cannot send direct message to yourself"),
        ("Alpha", "Nobody", "hi", TARGET_NOT_ACTIVE, "Agent 'Nobody' is not active"),
    ],
)
def test_send_direct_errors(mesh, sender, recipient, text, error_type, message):
    _join(mesh, "Alpha", "Beta")
    with pytest.raises(CoordinationError) as excinfo:
        send_direct(mesh, sender, recipient, text)
    assert excinfo.value.error_type == error_type
    assert str(excinfo.value) == message
    assert read_message_log(mesh) == []


def test_send_direct_reports_unwritable_inbox(mesh):
    _join(mesh, "Alpha", "Beta")
    shutil.rmtree(mesh.inbox_dir("Beta"))
    mesh.inbox_dir("Beta").write_text("not a directory", encoding="utf-8")
    with pytest.raises(CoordinationError) as excinfo:
        send_direct(mesh, "Alpha", "Beta", "hello")
    assert excinfo.value.error_type == DELIVERY_FAILED
    assert "Failed to send direct message to 'Beta'" in str(excinfo.value)


def test_broadcast_partial_failure_keeps_other_deliveries(mesh):
    _join(mesh, "Alpha", "Beta", "Gamma", "Delta")
    shutil.rmtree(mesh.inbox_dir("Gamma"))
    mesh.inbox_dir("Gamma").write_text("blocked", encoding="utf-8")

    result = send_broadcast(mesh, "Alpha", "deploy freeze in 10 minutes")
    assert result.delivered == ["Beta", "Delta"]
    assert result.failed == ["Gamma"]
    assert len(result.delivered) + len(result.failed) == 3

    events = read_message_log(mesh)
    assert len(events) == 1
    assert events[0].kind == "broadcast"
    assert events[0].recipient == "all"
    assert events[0].recipients == ["Beta", "Delta", "Gamma"]

    beta = _drain(mesh, "Beta")
    delta = _drain(mesh, "Delta")
    assert [m.recipient for m in beta] == ["Beta"]
    assert [m.recipient for m in delta] == ["Delta"]
    assert beta[0].id == delta[0].id == result.message.id


def test_broadcast_without_peers(mesh):
    _join(mesh, "Alpha")
    with pytest.raises(CoordinationError) as excinfo:
        send_broadcast(mesh, "Alpha", "anyone?")
    assert excinfo.value.error_type == NO_ACTIVE_RECIPIENTS
    with pytest.raises(CoordinationError) as excinfo:
        send_broadcast(mesh, "Alpha", "  ")
    assert excinfo.value.error_type == EMPTY_MESSAGE


def test_process_inbox_delivers_in_order_and_retries_failed_handler(mesh):
    _join(mesh, "Alpha", "Beta")
    first = send_direct(mesh, "Alpha", "Beta", "first")
    # inbox order comes from the millisecond prefix
    time.sleep(0.005)
    second = send_direct(mesh, "Alpha", "Beta", "second")

    seen: list[str] = []

    def flaky(message: InboxMessage) -> None:
        seen.append(message.id)
        if message.id == second.id and seen.count(second.id) == 1:
            raise RuntimeError("host busy")

    assert process_inbox(mesh, "Beta", flaky) == 1
    assert seen == [first.id, second.id]
    assert len(list(mesh.inbox_dir("Beta").glob("*.json"))) == 1

    assert process_inbox(mesh, "Beta", flaky) == 1
    assert seen == [first.id, second.id, second.id]
    assert list(mesh.inbox_dir("Beta").glob("*.json")) == []


def test_process_inbox_quarantines_malformed_files(mesh):
    _join(mesh, "Beta")
    inbox = mesh.inbox_dir("Beta")
    (inbox / "0001-bad.json").write_text("{oops", encoding="utf-8")
    (inbox / "0002-wrong.json").write_text(json.dumps({"id": 5, "text": "x"}), encoding="utf-8")

    handled: list[InboxMessage] = []
    assert process_inbox(mesh, "Beta", handled.append) == 0
    assert handled == []
    assert list(inbox.glob("*.json")) == []
    quarantined = sorted(p.name for p in mesh.quarantine_dir("Beta").iterdir())
    assert len(quarantined) == 2
    assert quarantined[0].endswith("-0001-bad.json")


def test_message_log_skips_corrupt_lines(mesh):
    _join(mesh, "Alpha", "Beta")
    send_direct(mesh, "Alpha", "Beta", "one")
    with open(mesh.message_log, "a", encoding="utf-8") as handle:
        handle.write("garbage line\n")
        handle.write(json.dumps({"id": "x"}) + "\n")
    send_direct(mesh, "Beta", "Alpha", "two")
    assert [e.text for e in read_message_log(mesh)] == ["one", "two"]


def test_tail_and_thread(mesh):
    _join(mesh, "Alpha", "Beta", "Gamma")
    send_direct(mesh, "Alpha", "Beta", "a->b")
    send_direct(mesh, "Gamma", "Alpha", "g->a")
    send_direct(mesh, "Beta", "Alpha", "b->a")
    send_broadcast(mesh, "Alpha", "everyone")

    assert [e.text for e in tail(mesh, 2)] == ["b->a", "everyone"]
    assert tail(mesh, 0) == []
    assert [e.text for e in thread(mesh, "Alpha", "Beta", 10)] == ["a->b", "b->a"]
    assert [e.text for e in thread(mesh, "Beta", "Alpha", 1)] == ["b->a"]


def _message(**overrides):
    payload = {
        "id": "m-1",
        "from": "subagent-ab12-AmberFalcon",
        "to": "Alpha",
        "text": "done",
        "kind": "direct",
        "timestamp": "2026-03-01T12:00:00.000Z",
    }
    payload.update(overrides)
    return InboxMessage.model_validate(payload)


def test_delivery_formatting():
    queued = _message()
    urgent = _message(urgent=True, kind="broadcast")
    assert delivery_mode_for(queued) is DeliveryMode.QUEUED
    assert delivery_mode_for(urgent) is DeliveryMode.INTERRUPT
    assert format_inbox_delivery(queued) == "direct message from AmberFalcon:\n\ndone"
    assert format_inbox_delivery(urgent).startswith("Urgent broadcast message from AmberFalcon:")


def test_format_message_event_truncates_long_text():
    event = MessageLogEvent.model_validate(
        {
            "id": "m-2",
            "from": "Alpha",
            "to": "Beta",
            "text": "x" * 300,
            "kind": "direct",
            "timestamp": "2026-03-01T12:00:00.000Z",
            "urgent": True,
        }
    )
    line = format_message_event(event)
    assert " [urgent] Alpha -> Beta: " in line
    assert line.endswith("...")
    assert len(line.split(": ", 1)[1]) == FEED_TEXT_LIMIT


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 20), ("7", 20), (True, 20), (float("nan"), 20), (0, 1), (-4, 1), (3.9, 3), (9999, 500)],
)
def test_normalize_limit(raw, expected):
    assert normalize_limit(raw) == expected


@pytest.mark.asyncio
async def test_inbox_watcher_drains_new_messages(mesh):
    _join(mesh, "Alpha", "Beta")
    send_direct(mesh, "Alpha", "Beta", "queued before start")
    received: list[str] = []
    drained = asyncio.Event()

    def on_drained() -> None:
        if len(received) >= 3:
            drained.set()

    watcher = InboxWatcher(mesh, "Beta", lambda m: received.append(m.text), debounce_ms=5, on_drained=on_drained)
    await watcher.start()
    try:
        assert watcher.running
        assert received == ["queued before start"]
        message = send_direct(mesh, "Alpha", "Beta", "arrived later")
        time.sleep(0.005)
        enqueue_inbox_message(mesh, "Beta", message.model_copy(update={"id": "dup", "text": "and another"}))
        await asyncio.wait_for(drained.wait(), timeout=3)
    finally:
        await watcher.stop()

    assert received == ["queued before start", "arrived later", "and another"]
    assert watcher.delivered == 3
    assert not watcher.running


@pytest.mark.asyncio
async def test_inbox_watcher_wakes_without_notify(mesh):
    _join(mesh, "Alpha", "Beta")
    received: list[str] = []
    arrived = asyncio.Event()

    def handle(message) -> None:
        received.append(message.text)
        arrived.set()

    watcher = InboxWatcher(mesh, "Beta", handle, debounce_ms=5)
    await watcher.start()
    try:
        assert received == []
        # Written straight to the inbox, so only the filesystem observer can see it.
        send_direct(mesh, "Alpha", "Beta", "seen by the observer")
        await asyncio.wait_for(arrived.wait(), timeout=5)
    finally:
        await watcher.stop()

    assert received == ["seen by the observer"]


@pytest.mark.asyncio
async def test_inbox_event_handler_forwards_only_message_files(tmp_path):
    wakes: list[str] = []
    handler = _InboxEventHandler(asyncio.get_running_loop(), lambda: wakes.append("wake"))

    handler.on_created(FileCreatedEvent(str(tmp_path / ".1.Beta.123.abc.tmp")))
    handler.on_created(DirCreatedEvent(str(tmp_path / ".invalid")))
    handler.on_created(FileCreatedEvent(str(tmp_path / ".invalid" / "1-bad.json")))
    await asyncio.sleep(0)
    assert wakes == []

    handler.on_moved(FileMovedEvent(str(tmp_path / ".1.tmp"), str(tmp_path / "1-abc.json")))
    handler.on_created(FileCreatedEvent(str(tmp_path / "2-def.json")))
    await asyncio.sleep(0)
    assert wakes == ["wake", "wake"]
