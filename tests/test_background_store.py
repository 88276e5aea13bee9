from __future__ import annotations

from agentdeck.engine.background import BackgroundStateStore
from agentdeck.shared.models.message import CanonicalMessage, MessageRole, user_message
from agentdeck.shared.models.session import SessionState


def _state(sid: str = "s1") -> SessionState:
    state = SessionState(session_id=sid, total_cost=1.5, is_processing=True, is_connected=True)
    state.append(user_message("run the task"))
    state.append(CanonicalMessage(
        role=MessageRole.TOOL_CALL, id="tool-task-1", tool_name="Task",
        tool_use_id="task-1", subagent_steps=[],
    ))
    state.append(CanonicalMessage(
        role=MessageRole.ASSISTANT, id="assistant-live", content="work", is_streaming=True,
    ))
    return state


def test_capture_overwrites_and_restore_hands_back_same_state() -> None:
    store = BackgroundStateStore()
    first, second = _state(), _state()
    store.capture("s1", first)
    store.capture("s1", second)

    assert store.get("s1") is second
    restored = store.restore("s1")
    assert restored is second
    assert store.has("s1") is False
    assert store.restore("s1") is None


def test_init_from_state_copies_and_rebuilds_cursor() -> None:
    store = BackgroundStateStore()
    original = _state()

    seeded = store.init_from_state("s1", original)

    assert seeded is not original
    assert seeded.messages[0] is not original.messages[0]
    assert seeded.parent_tool_map == {"task-1": "tool-task-1"}
    assert seeded.streaming_message_id == "assistant-live"
    assert seeded.total_cost == 1.5

    original.messages[0].content = "mutated"
    assert seeded.messages[0].content == "run the task"


def test_mark_disconnected_clears_live_flags() -> None:
    store = BackgroundStateStore()
    store.init_from_state("s1", _state())

    store.mark_disconnected("s1")

    state = store.get("s1")
    assert state.is_connected is False
    assert state.is_processing is False
    assert state.streaming_message_id is None
    assert not any(m.is_streaming for m in state.messages)
    # Unknown ids are ignored.
    store.mark_disconnected("missing")


def test_delete_and_consume() -> None:
    store = BackgroundStateStore()
    store.capture("a", _state("a"))
    store.capture("b", _state("b"))

    store.delete("a")
    consumed = store.consume("b")

    assert consumed.session_id == "b"
    assert len(store) == 0
    assert store.session_ids() == []
