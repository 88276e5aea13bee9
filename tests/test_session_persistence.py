from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory

from agentdeck.shared.models.message import (
    CanonicalMessage,
    ImageAttachment,
    MessageRole,
    SubagentStep,
    system_message,
    user_message,
)
from agentdeck.shared.models.session import EngineKind, Session
from agentdeck.shared.services.persistence import SessionPersistence


def _sample_timeline() -> list[CanonicalMessage]:
    return [
        user_message("fix the tests", images=[ImageAttachment(data="aGVsbG8=")]),
        CanonicalMessage(
            role=MessageRole.ASSISTANT,
            content="Looking at the failures.",
            thinking="Probably the fixture.",
            thinking_complete=True,
        ),
        CanonicalMessage(
            role=MessageRole.TOOL_CALL,
            id="tool-task-1",
            tool_name="Task",
            tool_use_id="task-1",
            tool_input={"prompt": "run pytest"},
            tool_result={"content": "2 passed"},
            subagent_steps=[
                SubagentStep(
                    tool_use_id="bash-1",
                    tool_name="Bash",
                    tool_input={"command": "pytest -q"},
                    tool_result="2 passed",
                ),
            ],
        ),
        system_message("Agent process exited unexpectedly (boom).", is_error=True),
    ]


def test_save_writes_record_with_resumption_metadata() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(base_dir=Path(tmpdir))
        session = Session(
            project_id="project-alpha",
            engine=EngineKind.CODEX,
            model="gpt-5-codex",
            resumption_handle="thread-123",
            title="fix the tests",
            total_cost=0.25,
        )

        path = persistence.save(session, _sample_timeline())

        assert path == Path(tmpdir) / "project-alpha" / f"{session.id}.json"
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["version"] == "1"
        assert payload["engine"] == "codex"
        assert payload["resumption_handle"] == "thread-123"
        assert payload["project_id"] == "project-alpha"
        assert payload["total_cost"] == 0.25
        assert len(payload["messages"]) == 4
        assert "saved_at" in payload


def test_reload_yields_identical_timeline() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(base_dir=Path(tmpdir))
        session = Session(project_id="p", engine=EngineKind.CLAUDE)
        timeline = _sample_timeline()
        persistence.save(session, timeline)

        record = persistence.load("p", session.id)

        assert record.messages == timeline
        assert record.session.id == session.id
        assert record.session.has_backend is False

        # Saving the reloaded timeline again produces the same messages payload.
        first = json.loads(persistence.path_for("p", session.id).read_text())
        persistence.save(record.session, record.messages)
        second = json.loads(persistence.path_for("p", session.id).read_text())
        assert first["messages"] == second["messages"]


def test_load_clears_streaming_flags() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(base_dir=Path(tmpdir))
        session = Session(project_id="p", engine=EngineKind.ACP)
        streaming = CanonicalMessage(
            role=MessageRole.ASSISTANT, content="partial", is_streaming=True,
        )
        persistence.save(session, [streaming])

        record = persistence.load("p", session.id)

        assert record.messages[0].is_streaming is False
        assert record.messages[0].content == "partial"


def test_list_sessions_orders_by_activity_and_skips_corrupt_files() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(base_dir=Path(tmpdir))
        older = Session(project_id="p", engine=EngineKind.CLAUDE, title="older")
        newer = Session(project_id="p", engine=EngineKind.CLAUDE, title="newer")
        newer.last_message_at = older.created_at.replace(year=older.created_at.year + 1)
        persistence.save(older, [])
        persistence.save(newer, [])
        (Path(tmpdir) / "p" / "broken.json").write_text("{not json", encoding="utf-8")

        sessions = persistence.list_sessions("p")

        assert [s.title for s in sessions] == ["newer", "older"]
        assert persistence.list_sessions("unknown-project") == []


def test_delete_removes_record() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(base_dir=Path(tmpdir))
        session = Session(project_id="p", engine=EngineKind.CLAUDE)
        persistence.save(session, [])

        assert persistence.delete("p", session.id) is True
        assert persistence.exists("p", session.id) is False
        assert persistence.delete("p", session.id) is False


def test_project_ids_are_sanitized_for_directory_names() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(base_dir=Path(tmpdir))
        path = persistence.path_for("../../etc", "abc")

        assert path.parent.parent == Path(tmpdir)
