from __future__ import annotations

import asyncio
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from agentdeck.engine.adapters.acp_adapter import AcpAdapter
from agentdeck.engine.adapters.base import StartConfig
from agentdeck.engine.errors import AuthError, RevivalError, RpcError, SpawnError
from agentdeck.engine.yaml_config import AcpAgentConfig
from agentdeck.shared.models.message import ImageAttachment
from agentdeck.shared.models.permission import DecisionOrigin, PermissionDecision


def _default_results() -> dict:
    return {
        "initialize": {"protocolVersion": 1, "agentCapabilities": {"loadSession": True}},
        "session/new": {
            "sessionId": "acp-1",
            "modes": {"availableModes": [{"id": "default"}, {"id": "plan"}]},
            "configOptions": [{"id": "model", "category": "model", "options": []}],
        },
        "session/load": {},
        "session/prompt": {"stopReason": "end_turn"},
        "session/set_mode": {},
        "session/set_config_option": {},
    }


class _FakeConnection:
    def __init__(self, name, *, results, request_handler=None, notification_handler=None,
                 on_exit=None, include_jsonrpc_header=True, default_timeout=30.0) -> None:
        self.name = name
        self.results = results
        self.request_handler = request_handler
        self.notification_handler = notification_handler
        self.on_exit = on_exit
        self.requests: list[tuple[str, object]] = []
        self.notifications: list[tuple[str, object]] = []
        self.spawned = None
        self.closed = False
        self.stderr_tail = ""

    async def spawn(self, command, *, cwd=None, env=None) -> None:
        self.spawned = (command, env)

    async def request(self, method, params=None, *, timeout=None):
        self.requests.append((method, params))
        value = self.results.get(method)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return await value(params)
        return value

    async def notify(self, method, params=None) -> None:
        self.notifications.append((method, params))

    async def close(self) -> None:
        self.closed = True

    def methods(self) -> list[str]:
        return [m for m, _ in self.requests]


class _Harness:
    def __init__(self, results: dict | None = None, decision: PermissionDecision | None = None) -> None:
        self.results = results or _default_results()
        self.connections: list[_FakeConnection] = []
        self.events: list[dict] = []
        self.permission_requests = []
        self.decision = decision or PermissionDecision(behavior="allow")
        agents = {
            "gemini": AcpAgentConfig(
                id="gemini", name="Gemini CLI", command="gemini",
                args=["--experimental-acp"], env={"GEMINI_API_KEY": "k"},
            ),
        }
        self.adapter = AcpAdapter(agents, connection_factory=self._factory)
        self.adapter.bind(self._on_event, self._on_permission)

    def _factory(self, name, **kwargs) -> _FakeConnection:
        conn = _FakeConnection(name, results=self.results, **kwargs)
        self.connections.append(conn)
        return conn

    async def _on_event(self, event: dict) -> None:
        self.events.append(event)

    async def _on_permission(self, request):
        self.permission_requests.append(request)
        return self.decision

    @property
    def conn(self) -> _FakeConnection:
        return self.connections[-1]

    def kinds(self) -> list[str]:
        return [e["event"] for e in self.events]

    async def update(self, update: dict, session_id: str = "acp-1") -> None:
        await self.conn.notification_handler(
            "session/update", {"sessionId": session_id, "update": update},
        )


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_start_spawns_agent_and_creates_session() -> None:
    h = _Harness()

    result = await h.adapter.start(StartConfig(session_id="s1", cwd="/repo", model="gemini-2.5-pro"))

    command, env = h.conn.spawned
    assert command == ["gemini", "--experimental-acp"]
    assert env["GEMINI_API_KEY"] == "k"
    assert result.resumption_handle == "acp-1"
    assert h.conn.methods() == ["initialize", "session/new", "session/set_config_option"]
    assert h.conn.requests[-1][1] == {
        "sessionId": "acp-1", "configId": "model", "value": "gemini-2.5-pro",
    }


@pytest.mark.asyncio
async def test_unknown_agent_and_auth_failures() -> None:
    h = _Harness()
    with pytest.raises(SpawnError):
        await h.adapter.start(StartConfig(session_id="s1", agent_id="missing"))

    h.results["session/new"] = RpcError(-32000, "Authentication required")
    with pytest.raises(AuthError):
        await h.adapter.start(StartConfig(session_id="s1"))
    assert h.conn.closed is True
    assert h.adapter.is_live("s1") is False


@pytest.mark.asyncio
async def test_resume_requires_load_support() -> None:
    h = _Harness()
    h.results["initialize"] = {"protocolVersion": 1, "agentCapabilities": {}}

    with pytest.raises(RevivalError):
        await h.adapter.start(StartConfig(session_id="s1", resume="acp-old"))


@pytest.mark.asyncio
async def test_replayed_history_during_load_is_ignored() -> None:
    h = _Harness()

    async def load(params):
        await h.update({"sessionUpdate": "agent_message_chunk",
                        "content": {"type": "text", "text": "old reply"}}, "acp-old")
        return {"sessionId": params["sessionId"]}

    h.results["session/load"] = load

    result = await h.adapter.start(StartConfig(session_id="s1", resume="acp-old"))

    assert result.resumption_handle == "acp-old"
    assert h.events == []


@pytest.mark.asyncio
async def test_prompt_streams_updates_and_completes_turn() -> None:
    h = _Harness()
    await h.adapter.start(StartConfig(session_id="s1"))

    await h.adapter.send("s1", "look", [ImageAttachment(data="BBBB")])
    await _settle()
    prompt = next(p for m, p in h.conn.requests if m == "session/prompt")
    assert prompt["prompt"][0] == {"type": "image", "data": "BBBB", "mimeType": "image/png"}
    assert prompt["prompt"][-1] == {"type": "text", "text": "look"}
    assert h.kinds() == ["turn_started", "turn_completed"]
    assert h.events[-1]["stop_reason"] == "end_turn"


@pytest.mark.asyncio
async def test_session_updates_map_to_events() -> None:
    h = _Harness()
    await h.adapter.start(StartConfig(session_id="s1"))

    await h.update({"sessionUpdate": "agent_thought_chunk", "content": {"type": "text", "text": "hmm"}})
    await h.update({"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "Reading"}})
    await h.update({
        "sessionUpdate": "tool_call", "toolCallId": "t1", "title": "Read a.py", "kind": "read",
        "status": "pending", "locations": [{"path": "/repo/a.py"}],
    })
    await h.update({
        "sessionUpdate": "tool_call_update", "toolCallId": "t1", "status": "completed",
        "rawOutput": {"content": "print(1)"},
    })
    await h.update({"sessionUpdate": "plan", "entries": [{"content": "step", "status": "pending"}]})
    await h.update({"sessionUpdate": "available_commands_update", "availableCommands": []})
    await h.update({"sessionUpdate": "usage_update", "cost": {"amount": 0.02, "currency": "USD"}})

    assert h.kinds() == [
        "reasoning_delta", "text_delta", "message_end", "tool_started",
        "tool_result", "tool_started", "usage",
    ]
    started = h.events[3]
    assert started["tool_name"] == "Read"
    assert started["tool_input"] == {"file_path": "/repo/a.py"}
    assert h.events[4]["result"] == {"content": "print(1)"}
    assert h.events[5]["tool_name"] == "TodoWrite"
    assert h.events[6]["cost"] == 0.02


@pytest.mark.asyncio
async def test_unknown_update_becomes_fallback_entry_and_foreign_updates_are_dropped() -> None:
    h = _Harness()
    await h.adapter.start(StartConfig(session_id="s1"))

    await h.update({"sessionUpdate": "agent_message_chunk",
                    "content": {"type": "text", "text": "x"}}, "someone-else")
    await h.update({"sessionUpdate": "brand_new_thing", "detail": {"n": 1}})
    await h.update({"sessionUpdate": "brand_new_thing", "detail": {"n": 2}})

    assert h.kinds() == ["tool_started", "tool_started"]
    fallback = h.events[0]
    assert fallback["tool_name"] == "brand_new_thing"
    assert fallback["tool_input"] == {"sessionUpdate": "brand_new_thing", "detail": {"n": 1}}
    assert fallback["completed"] is True
    assert fallback["tool_id"] != h.events[1]["tool_id"]


@pytest.mark.asyncio
async def test_turn_end_closes_tools_left_open() -> None:
    h = _Harness()
    await h.adapter.start(StartConfig(session_id="s1"))
    await h.update({"sessionUpdate": "tool_call", "toolCallId": "t9", "title": "ls", "kind": "execute",
                    "rawInput": {"command": ["/bin/sh", "-c", "ls"]}, "status": "in_progress"})

    await h.adapter.send("s1", "go")
    await _settle()

    assert h.kinds()[-2:] == ["tool_result", "turn_completed"]
    assert h.events[-2]["tool_id"] == "t9"


@pytest.mark.asyncio
async def test_permission_request_selects_option() -> None:
    h = _Harness(decision=PermissionDecision(behavior="allow", option_id="always"))
    await h.adapter.start(StartConfig(session_id="s1"))
    params = {
        "sessionId": "acp-1",
        "toolCall": {"toolCallId": "t1", "title": "rm", "kind": "execute",
                     "rawInput": {"command": ["/bin/sh", "-c", "rm x"]}},
        "options": [
            {"optionId": "once", "kind": "allow_once", "name": "Allow"},
            {"optionId": "always", "kind": "allow_always", "name": "Always"},
            {"optionId": "no", "kind": "reject_once", "name": "Reject"},
        ],
    }

    reply = await h.conn.request_handler("session/request_permission", params)

    assert reply == {"outcome": {"outcome": "selected", "optionId": "always"}}
    assert h.permission_requests[0].tool_name == "Bash"
    assert h.permission_requests[0].tool_input == {"command": "rm x"}

    h.decision = PermissionDecision.deny()
    reply = await h.conn.request_handler("session/request_permission", params)
    assert reply == {"outcome": {"outcome": "selected", "optionId": "no"}}

    h.decision = PermissionDecision.deny("Interrupted by user", origin=DecisionOrigin.FORCED)
    reply = await h.conn.request_handler("session/request_permission", params)
    assert reply == {"outcome": {"outcome": "cancelled"}}


@pytest.mark.asyncio
async def test_fs_requests_read_and_write_files() -> None:
    h = _Harness()
    await h.adapter.start(StartConfig(session_id="s1"))
    with TemporaryDirectory() as tmpdir:
        target = Path(tmpdir) / "nested" / "notes.txt"

        await h.conn.request_handler("fs/write_text_file", {"path": str(target), "content": "a\nb\nc\n"})
        reply = await h.conn.request_handler("fs/read_text_file", {"path": str(target), "line": 2, "limit": 1})

        assert target.read_text(encoding="utf-8") == "a\nb\nc\n"
        assert reply == {"content": "b\n"}
        with pytest.raises(RpcError):
            await h.conn.request_handler("fs/read_text_file", {"path": str(Path(tmpdir) / "nope")})


@pytest.mark.asyncio
async def test_interrupt_cancels_and_mode_support_is_checked() -> None:
    h = _Harness()
    await h.adapter.start(StartConfig(session_id="s1"))

    await h.adapter.interrupt("s1")
    await h.adapter.set_mode("s1", "plan")
    await h.adapter.set_mode("s1", "yolo")
    await h.adapter.set_mode("s1", "yolo")

    assert h.conn.notifications == [("session/cancel", {"sessionId": "acp-1"})]
    assert h.conn.requests[-1] == ("session/set_mode", {"sessionId": "acp-1", "modeId": "plan"})
    assert h.kinds() == ["system_notice"]
