from __future__ import annotations

import io
from pathlib import Path
from tempfile import TemporaryDirectory

from rich.console import Console

from agentdeck import app
from agentdeck.shared.models.message import CanonicalMessage, MessageRole, user_message
from agentdeck.shared.models.session import EngineKind, Session
from agentdeck.shared.services.persistence import SessionPersistence


def _console() -> Console:
    return Console(file=io.StringIO(), width=100, color_system=None)


def test_printer_holds_back_entries_that_are_still_changing() -> None:
    out = _console()
    printer = app.TimelinePrinter(out)
    tool = CanonicalMessage(role=MessageRole.TOOL_CALL, tool_name="Bash", tool_input={"command": "ls"})
    after = CanonicalMessage(role=MessageRole.ASSISTANT, content="Listed.")
    messages = [user_message("list files"), tool, after]

    printer.flush(messages)
    text = out.file.getvalue()
    assert "list files" in text
    assert "Listed." not in text

    tool.tool_result = "a.py"
    printer.flush(messages)
    text = out.file.getvalue()
    assert "a.py" in text
    assert "Listed." in text
    assert text.count("list files") == 1


def test_queued_entries_are_not_printed() -> None:
    out = _console()
    app.TimelinePrinter(out).flush([user_message("later", queued=True)], final=True)

    assert out.file.getvalue() == ""


def test_preview_truncates_long_values() -> None:
    assert app._preview(None) == ""
    assert app._preview({"a": 1}) == '{"a": 1}'
    long = app._preview("x" * 500, limit=20)
    assert len(long) == 20
    assert long.endswith("...")


def test_show_session_prints_saved_timeline(monkeypatch) -> None:
    out = _console()
    monkeypatch.setattr(app, "console", out)
    with TemporaryDirectory() as tmpdir:
        persistence = SessionPersistence(Path(tmpdir))
        session = Session(project_id="proj", engine=EngineKind.CODEX, title="Refactor parser")
        persistence.save(session, [
            user_message("refactor the parser"),
            CanonicalMessage(role=MessageRole.ASSISTANT, content="Done refactoring."),
        ])

        assert app._show_session(persistence, "proj", session.id) == 0
        assert app._show_session(persistence, "proj", "missing") == 1

    text = out.file.getvalue()
    assert "Refactor parser" in text
    assert "Done refactoring." in text
    assert "Session not found" in text
