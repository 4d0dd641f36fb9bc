import asyncio

import pytest

from virtual_lab.assist.assistant import AiAssistant
from virtual_lab.lab.registry import RoleCollisionPolicy, SessionRegistry
from virtual_lab.server.broker import (
    INVALID_SESSION_MESSAGE,
    NOT_JOINED_MESSAGE,
    ROLE_TAKEN_MESSAGE,
    SUPERSEDED_MESSAGE,
    LabBroker,
)
from virtual_lab.server.sessions import PersistenceFailure, SessionAlreadyEnded, SessionNotFound


class FakeConnection:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def last(self) -> dict:
        return self.sent[-1]


@pytest.fixture
def broker(store):
    return LabBroker(store, AiAssistant(None))


async def _join_pair(broker):
    session = await broker.start_session("mentor-1", "student-1")
    mentor, student = FakeConnection(), FakeConnection()
    mentor_id = broker.register(mentor)
    student_id = broker.register(student)
    await broker.join(mentor_id, session.session_code, "Mentor", "mentor-1")
    await broker.join(student_id, session.session_code, "Student", "student-1")
    mentor.sent.clear()
    student.sent.clear()
    return session, (mentor_id, mentor), (student_id, student)


@pytest.mark.asyncio
async def test_join_unknown_session_is_refused(broker):
    ws = FakeConnection()
    cid = broker.register(ws)
    assert await broker.join(cid, "LAB-0-NOPE00", "Mentor") is None
    assert ws.sent == [{"type": "error", "message": INVALID_SESSION_MESSAGE}]
    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_join_bad_role_is_refused(broker):
    session = await broker.start_session("m", "s")
    ws = FakeConnection()
    cid = broker.register(ws)
    assert await broker.join(cid, session.session_code, "Teacher") is None
    assert ws.last()["type"] == "error"
    assert "Invalid role" in ws.last()["message"]


@pytest.mark.asyncio
async def test_first_join_gets_empty_buffer_and_peer_is_told(broker):
    session = await broker.start_session("m", "s")
    mentor, student = FakeConnection(), FakeConnection()
    mentor_id = broker.register(mentor)
    student_id = broker.register(student)

    await broker.join(mentor_id, session.session_code, "Mentor")
    assert mentor.sent == [{
        "type": "joined-lab",
        "sessionCode": session.session_code,
        "currentCode": "",
        "language": "javascript",
        "role": "Mentor",
    }]

    await broker.join(student_id, session.session_code, "student")
    assert student.last()["role"] == "Student"
    assert mentor.last() == {"type": "participant-joined", "userRole": "Student"}


@pytest.mark.asyncio
async def test_code_update_reaches_peer_but_not_sender(broker, store):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)

    delivered = await broker.update_code(student_id, session.session_code, "let a = 1;", "javascript", "student-1")
    assert delivered == 1
    assert mentor.sent == [{"type": "code-mirrored", "code": "let a = 1;", "language": "javascript"}]
    assert student.sent == []

    await broker.drain()
    snapshots = store.get_code_snapshots(session.id)
    assert [s.code for s in snapshots] == ["let a = 1;"]
    assert snapshots[0].author_id == "student-1"


@pytest.mark.asyncio
async def test_code_update_requires_join(broker):
    session = await broker.start_session("m", "s")
    ws = FakeConnection()
    cid = broker.register(ws)
    assert await broker.update_code(cid, session.session_code, "x") == 0
    assert ws.sent == [{"type": "error", "message": NOT_JOINED_MESSAGE}]


@pytest.mark.asyncio
async def test_late_joiner_sees_latest_buffer(broker):
    session = await broker.start_session("m", "s")
    mentor = FakeConnection()
    mentor_id = broker.register(mentor)
    await broker.join(mentor_id, session.session_code, "Mentor")
    for i in range(5):
        await broker.update_code(mentor_id, session.session_code, f"v{i}", "python")

    student = FakeConnection()
    student_id = broker.register(student)
    await broker.join(student_id, session.session_code, "Student")
    joined = student.last()
    assert joined["currentCode"] == "v4"
    assert joined["language"] == "python"
    await broker.drain()


@pytest.mark.asyncio
async def test_disconnect_notifies_peer_and_keeps_buffer(broker):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    await broker.update_code(student_id, session.session_code, "print(1)")

    await broker.disconnect(mentor_id)
    assert student.sent == [{"type": "participant-disconnected"}]
    assert not broker.is_connected(mentor_id)
    live = broker.registry.get(session.session_code)
    assert live.mentor_connection_id is None
    assert live.current_code == "print(1)"

    # the remaining participant keeps working on the retained buffer
    assert await broker.update_code(student_id, session.session_code, "print(2)") == 0
    assert student.sent == [{"type": "participant-disconnected"}]

    again = FakeConnection()
    again_id = broker.register(again)
    await broker.join(again_id, session.session_code, "Mentor")
    assert again.last()["currentCode"] == "print(2)"
    assert await broker.update_code(student_id, session.session_code, "print(3)") == 1
    assert again.last() == {"type": "code-mirrored", "code": "print(3)", "language": "javascript"}
    await broker.drain()


@pytest.mark.asyncio
async def test_leave_notifies_peer(broker):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    await broker.leave(student_id, session.session_code)
    assert mentor.sent == [{"type": "participant-left"}]
    # leaving twice is silent
    await broker.leave(student_id, session.session_code)
    assert mentor.sent == [{"type": "participant-left"}]


@pytest.mark.asyncio
async def test_reconnect_supersedes_previous_holder(broker):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    newer = FakeConnection()
    newer_id = broker.register(newer)

    await broker.join(newer_id, session.session_code, "Student")
    assert student.sent == [{"type": "error", "message": SUPERSEDED_MESSAGE}]
    assert newer.last()["type"] == "joined-lab"
    assert mentor.last() == {"type": "participant-joined", "userRole": "Student"}

    live = broker.registry.get(session.session_code)
    assert live.student_connection_id == newer_id
    assert sorted(live.connections()) == sorted([mentor_id, newer_id])

    # the superseded connection is no longer bound and cannot write
    await broker.update_code(student_id, session.session_code, "stale")
    assert student.last()["message"] == NOT_JOINED_MESSAGE
    assert live.current_code == ""


@pytest.mark.asyncio
async def test_reject_policy_keeps_first_holder(store):
    broker = LabBroker(store, AiAssistant(None), SessionRegistry(policy=RoleCollisionPolicy.REJECT))
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    second = FakeConnection()
    second_id = broker.register(second)

    await broker.join(second_id, session.session_code, "Student")
    assert second.sent == [{"type": "error", "message": ROLE_TAKEN_MESSAGE}]
    assert broker.registry.get(session.session_code).student_connection_id == student_id
    assert mentor.sent == []


@pytest.mark.asyncio
async def test_failed_send_is_counted_and_buffer_still_updates(broker):
    session = await broker.start_session("m", "s")
    broken = FakeConnection(fail=True)
    healthy = FakeConnection()
    broken_id = broker.register(broken)
    healthy_id = broker.register(healthy)
    await broker.join(broken_id, session.session_code, "Mentor")
    await broker.join(healthy_id, session.session_code, "Student")

    failures = broker.stats()["send_failures"]
    delivered = await broker.update_code(healthy_id, session.session_code, "x")
    assert delivered == 0
    assert broker.stats()["send_failures"] == failures + 1
    # the buffer is updated even when nobody could be told
    assert broker.registry.get(session.session_code).current_code == "x"
    await broker.drain()


@pytest.mark.asyncio
async def test_debug_request_answers_requester_only(broker, store):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)

    broker.spawn_debug_request(
        student_id,
        session_code=session.session_code,
        error_message="ReferenceError: x is not defined",
        code_snippet="console.log(x)",
        author_id="student-1",
    )
    await broker.drain()

    assert mentor.sent == []
    reply = student.last()
    assert reply["type"] == "debug-response"
    assert "ReferenceError: x is not defined" in reply["cause"]
    assert set(reply) == {"type", "cause", "fix", "bestPractices"}

    logs = store.get_debug_logs(session.id)
    assert len(logs) == 1
    assert logs[0].used_fallback is True
    assert logs[0].author_id == "student-1"
    assert store.get_session(session.id).ai_interaction_count == 1


@pytest.mark.asyncio
async def test_debug_request_uses_room_language(broker):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    await broker.update_code(mentor_id, session.session_code, "x = 1", "python")
    analysis = await broker.debug_request(student_id, session.session_code, "NameError", "y")
    assert "python" in analysis.fix
    await broker.drain()


@pytest.mark.asyncio
async def test_suggestion_requires_description(broker):
    ws = FakeConnection()
    cid = broker.register(ws)
    await broker.suggest_code(cid, "   ")
    assert ws.sent == [{"type": "code-suggestion-response", "error": "A description is required"}]


@pytest.mark.asyncio
async def test_suggestion_falls_back_without_provider(broker):
    ws = FakeConnection()
    cid = broker.register(ws)
    broker.spawn_suggestion(cid, "reverse a string", "python")
    await broker.drain()
    reply = ws.last()
    assert reply["type"] == "code-suggestion-response"
    assert reply["suggestion"].startswith("# Unable to generate a python suggestion")


@pytest.mark.asyncio
async def test_review_counts_interaction(broker, store):
    session = await broker.start_session("m", "s")
    review = await broker.review_code("a = 1", session_code=session.session_code)
    assert review.fallback is True
    assert store.get_session(session.id).ai_interaction_count == 1
    # unknown codes are answered but not counted
    await broker.review_code("a = 1", session_code="LAB-0-NOPE00")


@pytest.mark.asyncio
async def test_end_session_stores_live_buffer_and_notifies(broker, store):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    await broker.update_code(student_id, session.session_code, "final()")
    mentor.sent.clear()

    ended = await broker.end_session(session.id)
    assert ended.final_code_snapshot == "final()"
    assert mentor.last() == {"type": "session-ended", "sessionCode": session.session_code}
    assert student.last() == {"type": "session-ended", "sessionCode": session.session_code}
    assert session.session_code not in broker.registry
    assert store.get_session(session.id).status.value == "completed"
    await broker.drain()


@pytest.mark.asyncio
async def test_end_session_explicit_snapshot_wins(broker):
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)
    await broker.update_code(student_id, session.session_code, "live")
    ended = await broker.end_session(session.id, "submitted")
    assert ended.final_code_snapshot == "submitted"
    await broker.drain()


@pytest.mark.asyncio
async def test_end_session_twice_and_join_after_end(broker):
    session = await broker.start_session("m", "s")
    await broker.end_session(session.id, "done")
    with pytest.raises(SessionAlreadyEnded):
        await broker.end_session(session.id, "again")
    with pytest.raises(SessionNotFound):
        await broker.end_session("missing")

    ws = FakeConnection()
    cid = broker.register(ws)
    assert await broker.join(cid, session.session_code, "Student") is None
    assert ws.last()["message"] == INVALID_SESSION_MESSAGE


@pytest.mark.asyncio
async def test_end_session_by_code(broker):
    session = await broker.start_session("m", "s")
    ended = await broker.end_session_by_code(session.session_code)
    assert ended.id == session.id
    with pytest.raises(SessionNotFound):
        await broker.end_session_by_code("LAB-0-NOPE00")


@pytest.mark.asyncio
async def test_idle_room_is_evicted_after_ttl(store):
    broker = LabBroker(store, AiAssistant(None), idle_ttl=0.05)
    session = await broker.start_session("m", "s")
    ws = FakeConnection()
    cid = broker.register(ws)
    await broker.join(cid, session.session_code, "Mentor")
    await broker.disconnect(cid)
    assert session.session_code in broker.registry

    await asyncio.sleep(0.2)
    assert session.session_code not in broker.registry
    # eviction is not an end: the session can be joined again
    again = FakeConnection()
    again_id = broker.register(again)
    await broker.join(again_id, session.session_code, "Mentor")
    assert again.last()["type"] == "joined-lab"
    await broker.shutdown()


@pytest.mark.asyncio
async def test_rejoin_cancels_idle_eviction(store):
    broker = LabBroker(store, AiAssistant(None), idle_ttl=0.1)
    session = await broker.start_session("m", "s")
    cid = broker.register(FakeConnection())
    await broker.join(cid, session.session_code, "Mentor")
    await broker.leave(cid, session.session_code)
    await broker.join(cid, session.session_code, "Mentor")

    await asyncio.sleep(0.25)
    assert session.session_code in broker.registry
    await broker.shutdown()


@pytest.mark.asyncio
async def test_stats(broker):
    session, _, _ = await _join_pair(broker)
    stats = broker.stats()
    assert stats["active_rooms"] == 1
    assert stats["connections"] == 2
    assert stats["bound_connections"] == 2
    assert stats["ai_provider"] is None


def _failing_write(*args, **kwargs):
    raise PersistenceFailure("disk full")


@pytest.mark.asyncio
async def test_snapshot_write_failure_does_not_block_mirroring(broker, store, monkeypatch):
    monkeypatch.setattr(store, "save_code_snapshot", _failing_write)
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)

    assert await broker.update_code(student_id, session.session_code, "x = 1", "python") == 1
    assert mentor.sent == [{"type": "code-mirrored", "code": "x = 1", "language": "python"}]
    await broker.drain()
    assert broker.stats()["background_tasks"] == 0
    assert broker.registry.get(session.session_code).current_code == "x = 1"


@pytest.mark.asyncio
async def test_debug_log_failure_still_answers_requester(broker, store, monkeypatch):
    monkeypatch.setattr(store, "increment_ai_interactions", _failing_write)
    monkeypatch.setattr(store, "save_debug_log", _failing_write)
    session, (mentor_id, mentor), (student_id, student) = await _join_pair(broker)

    broker.spawn_debug_request(
        student_id,
        session_code=session.session_code,
        error_message="TypeError: undefined is not a function",
        code_snippet="foo()",
    )
    await broker.drain()

    reply = student.last()
    assert reply["type"] == "debug-response"
    assert set(reply) == {"type", "cause", "fix", "bestPractices"}
    assert all(reply[key] for key in ("cause", "fix", "bestPractices"))
    assert mentor.sent == []
