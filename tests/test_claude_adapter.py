from __future__ import annotations

from types import SimpleNamespace

import pytest

from agentdeck.engine.adapters.base import StartConfig
from agentdeck.engine.adapters.claude_adapter import ClaudeAdapter, _ClaudeSession
from agentdeck.shared.models.message import ImageAttachment
from agentdeck.shared.models.permission import PermissionDecision


class _FakeClient:
    def __init__(self, messages=None) -> None:
        self.messages = list(messages or [])
        self.queries: list = []
        self.interrupted = False
        self.rewound: list[str] = []

    async def rewind_files(self, user_message_id: str) -> None:
        self.rewound.append(user_message_id)

    async def query(self, prompt) -> None:
        self.queries.append(prompt)

    async def interrupt(self) -> None:
        self.interrupted = True

    async def receive_messages(self):
        for message in self.messages:
            yield message

    async def disconnect(self) -> None:
        return None


def _adapter(client: _FakeClient | None = None, decision: PermissionDecision | None = None):
    events: list[dict] = []
    requests: list = []

    async def on_event(event: dict) -> None:
        events.append(event)

    async def on_permission(request):
        requests.append(request)
        return decision or PermissionDecision(behavior="allow")

    adapter = ClaudeAdapter()
    adapter.bind(on_event, on_permission)
    session = _ClaudeSession(client=client or _FakeClient(), handle="h-old")
    adapter._sessions["s1"] = session
    return adapter, session, events, requests


def _stream(event: dict, uuid: str = "u1", parent: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(event=event, uuid=uuid, parent_tool_use_id=parent, session_id="h-old")


@pytest.mark.asyncio
async def test_stream_events_become_deltas() -> None:
    adapter, session, events, _ = _adapter()

    await adapter._translate("s1", session, _stream({"type": "message_start"}))
    await adapter._translate("s1", session, _stream({
        "type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"},
    }, uuid="u2"))
    await adapter._translate("s1", session, _stream({
        "type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"},
    }, uuid="u3"))
    await adapter._translate("s1", session, _stream({"type": "message_delta"}))

    assert [e["event"] for e in events] == [
        "message_start", "reasoning_delta", "text_delta", "message_end",
    ]
    assert events[2]["text"] == "Hi"
    assert events[2]["fragment_id"] == "u3"


@pytest.mark.asyncio
async def test_assistant_message_yields_snapshot_then_tools() -> None:
    adapter, session, events, _ = _adapter()
    message = SimpleNamespace(
        model="claude-sonnet-4-5",
        parent_tool_use_id=None,
        content=[
            SimpleNamespace(thinking="plan", signature="sig"),
            SimpleNamespace(text="Let me check."),
            SimpleNamespace(id="tu-1", name="Bash", input={"command": "ls"}),
        ],
    )

    await adapter._translate("s1", session, message)

    assert events[0]["event"] == "assistant_snapshot"
    assert events[0]["text"] == "Let me check."
    assert events[0]["thinking"] == "plan"
    assert events[1]["event"] == "tool_started"
    assert events[1]["tool_id"] == "tu-1"
    assert events[1]["tool_input"] == {"command": "ls"}


@pytest.mark.asyncio
async def test_authentication_failure_is_reported() -> None:
    adapter, session, events, _ = _adapter()
    message = SimpleNamespace(
        model="<synthetic>", parent_tool_use_id=None, error="authentication_failed",
        content=[SimpleNamespace(text="Invalid API key")],
    )

    await adapter._translate("s1", session, message)

    assert events == [{
        "event": "auth_required", "session_id": "s1",
        "engine": "claude", "message": "Invalid API key",
    }]


@pytest.mark.asyncio
async def test_tool_results_and_user_echo() -> None:
    adapter, session, events, _ = _adapter()
    tool_result = SimpleNamespace(
        parent_tool_use_id="task-1",
        tool_use_result={"stdout": "ok"},
        content=[SimpleNamespace(tool_use_id="tu-2", content=[{"type": "text", "text": "ok"}], is_error=False)],
    )
    echo = SimpleNamespace(parent_tool_use_id=None, uuid="cp-7", content="summary of the work")

    await adapter._translate("s1", session, tool_result)
    await adapter._translate("s1", session, echo)

    assert events[0]["event"] == "tool_result"
    assert events[0]["result"] == {"stdout": "ok", "content": "ok"}
    assert events[0]["parent_tool_use_id"] == "task-1"
    assert events[1] == {
        "event": "user_echo", "session_id": "s1",
        "text": "summary of the work", "checkpoint_id": "cp-7",
    }


@pytest.mark.asyncio
async def test_system_init_and_compaction() -> None:
    adapter, session, events, _ = _adapter()

    await adapter._translate("s1", session, SimpleNamespace(
        subtype="init", data={"session_id": "h-new", "model": "claude-opus-4-1"},
    ))
    await adapter._translate("s1", session, SimpleNamespace(
        subtype="compact_boundary", data={"compact_metadata": {"trigger": "manual", "pre_tokens": 120000}},
    ))

    assert session.handle == "h-new"
    assert events[0]["event"] == "handle_updated"
    assert events[0]["resumption_handle"] == "h-new"
    assert events[1] == {
        "event": "compact_boundary", "session_id": "s1", "trigger": "manual", "pre_tokens": 120000,
    }


@pytest.mark.asyncio
async def test_result_message_completes_turn_with_cost_and_error() -> None:
    adapter, session, events, _ = _adapter()

    await adapter._translate("s1", session, SimpleNamespace(
        subtype="success", total_cost_usd=0.25, num_turns=2, session_id="h-old", is_error=False,
    ))
    await adapter._translate("s1", session, SimpleNamespace(
        subtype="error_max_turns", total_cost_usd=0.1, num_turns=30, session_id="h-old",
        is_error=True, result=None,
    ))

    assert [e["event"] for e in events] == ["turn_completed", "turn_completed"]
    assert events[0]["cost"] == 0.25
    assert events[0]["error"] is None
    assert "maximum number of turns" in events[1]["error"]


@pytest.mark.asyncio
async def test_stream_end_reports_process_exit() -> None:
    client = _FakeClient([SimpleNamespace(parent_tool_use_id=None, uuid=None, content="hello")])
    adapter, session, events, _ = _adapter(client)

    await adapter._read_messages("s1", session)

    assert events[-1]["event"] == "process_exited"
    assert adapter.is_live("s1") is False


@pytest.mark.asyncio
async def test_send_and_interrupt_use_client() -> None:
    pytest.importorskip("claude_agent_sdk")
    client = _FakeClient()
    adapter, _, events, _ = _adapter(client)

    await adapter.send("s1", "plain text")
    await adapter.send("s1", "with image", [ImageAttachment(data="CCCC")])
    await adapter.interrupt("s1")

    assert client.queries[0] == "plain text"
    streamed = [m async for m in client.queries[1]]
    content = streamed[0]["message"]["content"]
    assert content[0]["source"]["data"] == "CCCC"
    assert content[-1] == {"type": "text", "text": "with image"}
    assert [e["event"] for e in events] == ["turn_started", "turn_started"]
    assert client.interrupted is True


@pytest.mark.asyncio
async def test_permission_check_routes_through_callback() -> None:
    pytest.importorskip("claude_agent_sdk")
    from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

    adapter, _, _, requests = _adapter(decision=PermissionDecision(
        behavior="allow", updated_input={"command": "ls -la"},
    ))
    allowed = await adapter._check_permission("s1", "Bash", {"command": "ls"})
    assert isinstance(allowed, PermissionResultAllow)
    assert allowed.updated_input == {"command": "ls -la"}
    assert requests[0].tool_name == "Bash"
    assert [o.option_id for o in requests[0].options] == ["allow", "allow_always", "deny"]

    adapter, _, _, _ = _adapter(decision=PermissionDecision.deny("Not now"))
    denied = await adapter._check_permission("s1", "Write", {"file_path": "/x"})
    assert isinstance(denied, PermissionResultDeny)
    assert denied.message == "Not now"


@pytest.mark.asyncio
async def test_start_enables_checkpoints_and_revert_rewinds_files(monkeypatch) -> None:
    sdk = pytest.importorskip("claude_agent_sdk")
    created: list = []

    class _ConnectingClient(_FakeClient):
        def __init__(self, options) -> None:
            super().__init__()
            self.options = options
            created.append(self)

        async def connect(self) -> None:
            return None

    monkeypatch.setattr(sdk, "ClaudeAgentOptions", lambda **kwargs: SimpleNamespace(**kwargs))
    monkeypatch.setattr(sdk, "ClaudeSDKClient", _ConnectingClient)

    adapter = ClaudeAdapter()
    await adapter.start(StartConfig(session_id="s2", cwd="/repo"))
    options = created[0].options
    assert options.enable_file_checkpointing is True
    assert options.extra_args == {"replay-user-messages": None}

    adapter._sessions["s2"] = _ClaudeSession(client=created[0])
    assert await adapter.revert_files("s2", "cp-7") is True
    assert created[0].rewound == ["cp-7"]
    await adapter.stop("s2")
