import json
import os
import time
from concurrent.futures import ThreadPoolExecutor

from agent_mesh.models import RegistrationOwner
from agent_mesh.registry import (
    ReservationBook,
    build_registration,
    claim_agent_name,
    get_agent,
    heartbeat,
    list_active,
    read_registration,
    register,
    resolve_role,
    unregister,
    update_reservations,
)
from agent_mesh.storage import lock_metadata_path, lock_path_for


def _registration(name: str, *, pid: int | None = None, session_id: str = "session-a", model: str = "test-model"):
    return build_registration(name, session_id=session_id, model=model, cwd="/work/repo", pid=pid)


def test_register_writes_camel_case_record(mesh):
    assert register(mesh, _registration("GreenCastle"))
    raw = json.loads(mesh.registration_path("GreenCastle").read_text(encoding="utf-8"))
    assert raw["name"] == "GreenCastle"
    assert raw["pid"] == os.getpid()
    assert raw["sessionId"] == "session-a"
    assert raw["startedAt"].endswith("Z")
    assert "reservations" not in raw
    assert mesh.inbox_dir("GreenCastle").is_dir()


def test_second_live_owner_is_rejected_and_record_unchanged(mesh):
    first = _registration("GreenCastle", session_id="first")
    assert register(mesh, first)
    before = mesh.registration_path("GreenCastle").read_text(encoding="utf-8")

    # Same live pid, different session: still a different owner.
    assert register(mesh, _registration("GreenCastle", session_id="second")) is False
    assert mesh.registration_path("GreenCastle").read_text(encoding="utf-8") == before


def test_same_owner_may_re_register(mesh):
    registration = _registration("GreenCastle")
    assert register(mesh, registration)
    assert register(mesh, registration.model_copy(update={"model": "other-model"}))
    stored = read_registration(mesh.registration_path("GreenCastle"))
    assert stored is not None and stored.model == "other-model"


def test_dead_owner_is_overwritten(mesh, dead_pid):
    assert register(mesh, _registration("GreenCastle", pid=dead_pid, session_id="old"))
    assert register(mesh, _registration("GreenCastle", session_id="new"))
    stored = read_registration(mesh.registration_path("GreenCastle"))
    assert stored is not None
    assert stored.pid == os.getpid()
    assert stored.session_id == "new"


def _hold_lock(target) -> None:
    lock_path = lock_path_for(target)
    lock_path.write_text("", encoding="utf-8")
    lock_metadata_path(lock_path).write_text(json.dumps({"pid": os.getpid(), "acquired_ts": 9e12}), encoding="utf-8")


def test_register_fails_when_lock_is_held(mesh):
    target = mesh.registration_path("GreenCastle")
    _hold_lock(target)
    assert register(mesh, _registration("GreenCastle")) is False
    assert not target.exists()


def test_unregister_leaves_record_while_lock_is_held(mesh):
    assert register(mesh, _registration("GreenCastle", session_id="owner"))
    target = mesh.registration_path("GreenCastle")
    _hold_lock(target)

    assert unregister(mesh, "GreenCastle") is False
    assert unregister(mesh, "GreenCastle", RegistrationOwner(pid=os.getpid(), session_id="owner")) is False
    assert target.exists()


def test_heartbeat_refuses_to_overwrite_other_live_owner(mesh):
    assert register(mesh, _registration("GreenCastle", session_id="owner"))
    intruder = _registration("GreenCastle", session_id="intruder")
    assert heartbeat(mesh, intruder) is False
    stored = read_registration(mesh.registration_path("GreenCastle"))
    assert stored is not None and stored.session_id == "owner"


def test_unregister_requires_matching_owner_token(mesh):
    assert register(mesh, _registration("GreenCastle", session_id="owner"))
    assert unregister(mesh, "GreenCastle", RegistrationOwner(pid=os.getpid() + 1)) is False
    assert unregister(mesh, "GreenCastle", RegistrationOwner(pid=os.getpid(), session_id="someone-else")) is False
    assert mesh.registration_path("GreenCastle").exists()
    assert unregister(mesh, "GreenCastle", RegistrationOwner(pid=os.getpid(), session_id="owner")) is True
    assert not mesh.registration_path("GreenCastle").exists()
    assert unregister(mesh, "GreenCastle") is False


def test_unregister_pid_only_token_ignores_session(mesh):
    assert register(mesh, _registration("GreenCastle", session_id="owner"))
    assert unregister(mesh, "GreenCastle", RegistrationOwner(pid=os.getpid())) is True


def test_list_active_prunes_dead_and_malformed_and_sorts(mesh, dead_pid):
    assert register(mesh, _registration("Zulu"))
    assert register(mesh, _registration("Alpha"))
    assert register(mesh, _registration("Ghost", pid=dead_pid))
    mesh.registration_path("Broken").write_text("{not json", encoding="utf-8")
    mesh.registration_path("WrongTypes").write_text(
        json.dumps({"name": "WrongTypes", "pid": "12", "sessionId": "s", "cwd": "/", "model": "m",
                    "startedAt": "t", "lastSeenAt": "t"}),
        encoding="utf-8",
    )

    names = [agent.name for agent in list_active(mesh)]
    assert names == ["Alpha", "Zulu"]
    assert not mesh.registration_path("Ghost").exists()
    assert not mesh.registration_path("Broken").exists()
    assert not mesh.registration_path("WrongTypes").exists()

    assert [agent.name for agent in list_active(mesh, "Alpha")] == ["Zulu"]


def test_list_active_ignores_lock_metadata_files(mesh):
    assert register(mesh, _registration("Alpha"))
    lock_metadata_path(lock_path_for(mesh.registration_path("Alpha"))).write_text(
        json.dumps({"pid": os.getpid(), "acquired_ts": 1.0}), encoding="utf-8"
    )
    assert [agent.name for agent in list_active(mesh)] == ["Alpha"]


def test_get_agent(mesh):
    assert register(mesh, _registration("Alpha"))
    found = get_agent(mesh, "Alpha")
    assert found is not None and found.cwd == "/work/repo"
    assert get_agent(mesh, "Nobody") is None


def test_claim_agent_name_falls_back_to_numbered_suffix(mesh):
    assert register(mesh, _registration("SwiftRiver", session_id="holder"))
    assert register(mesh, _registration("SwiftRiver2", session_id="holder"))

    claimed = claim_agent_name(mesh, lambda name: _registration(name, session_id="newcomer"), "SwiftRiver")
    assert claimed == "SwiftRiver3"


def test_claim_agent_name_explicit_does_not_fall_back(mesh):
    assert register(mesh, _registration("SwiftRiver", session_id="holder"))
    claimed = claim_agent_name(
        mesh, lambda name: _registration(name, session_id="newcomer"), "SwiftRiver", explicit=True
    )
    assert claimed is None
    assert not mesh.registration_path("SwiftRiver2").exists()


def test_resolve_role():
    assert resolve_role(0, False) is None
    assert resolve_role(1, False) == "subagent"
    assert resolve_role(0, True) == "orchestrator"
    assert resolve_role(2, True) == "orchestrator"


def test_reservation_book_reserve_release():
    book = ReservationBook()
    book.reserve(["src/", "README.md"], reason="  refactor  ")
    book.reserve(["src/"], reason=None)
    snapshot = book.snapshot()
    assert snapshot is not None
    assert [entry.pattern for entry in snapshot] == ["README.md", "src/"]
    assert snapshot[0].reason == "refactor"
    assert snapshot[1].reason is None

    assert book.release(["README.md", "missing"]) == ["README.md"]
    assert book.release() == ["src/"]
    assert book.snapshot() is None


def test_reservations_round_trip_through_heartbeat(mesh):
    registration = _registration("Alpha")
    assert register(mesh, registration)
    book = ReservationBook()
    book.reserve(["src/auth/"], reason="auth rewrite")
    assert heartbeat(mesh, registration.model_copy(update={"reservations": book.snapshot()}))
    stored = get_agent(mesh, "Alpha")
    assert stored is not None and stored.reservations is not None
    assert stored.reservations[0].pattern == "src/auth/"
    assert stored.reservations[0].reason == "auth rewrite"


def test_update_reservations_writes_under_lock(mesh):
    assert register(mesh, _registration("Alpha"))
    before = read_registration(mesh.registration_path("Alpha"))

    result = update_reservations(mesh, "Alpha", lambda book: book.reserve(["src/auth/"], "auth rewrite"))

    assert result is not None
    updated, added = result
    assert [r.pattern for r in added] == ["src/auth/"]
    assert updated.session_id == before.session_id
    stored = get_agent(mesh, "Alpha")
    assert stored is not None and [r.pattern for r in stored.reservations] == ["src/auth/"]

    result = update_reservations(mesh, "Alpha", lambda book: book.release())
    assert result is not None and result[1] == ["src/auth/"]
    assert get_agent(mesh, "Alpha").reservations is None


def test_concurrent_reservation_updates_are_not_lost(mesh):
    assert register(mesh, _registration("Alpha"))

    def reserve(pattern: str):
        def mutate(book: ReservationBook):
            added = book.reserve([pattern])
            time.sleep(0.05)
            return added

        return update_reservations(mesh, "Alpha", mutate)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(reserve, ["src/a/", "docs/"]))

    assert all(result is not None for result in results)
    stored = get_agent(mesh, "Alpha")
    assert sorted(r.pattern for r in stored.reservations) == ["docs/", "src/a/"]


def test_update_reservations_refuses_other_owner_and_held_lock(mesh):
    assert register(mesh, _registration("Alpha", session_id="owner"))
    stored = read_registration(mesh.registration_path("Alpha"))
    stale_owner = RegistrationOwner(pid=os.getpid(), session_id="previous")

    assert update_reservations(mesh, "Alpha", lambda book: book.reserve(["x/"]), owner=stale_owner) is None
    assert update_reservations(mesh, "Missing", lambda book: book.reserve(["x/"])) is None

    _hold_lock(mesh.registration_path("Alpha"))
    assert update_reservations(mesh, "Alpha", lambda book: book.reserve(["x/"]), owner=stored.owner()) is None
    assert read_registration(mesh.registration_path("Alpha")).reservations is None
