"""ACP engine adapter.

Launches a configured Agent Client Protocol agent per session and talks
JSON-RPC 2.0 to it over stdio. Tool calls are normalized into the
canonical tool shape (see tool_mapping) so they render like Claude's.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentdeck.engine.adapters.base import EngineAdapter, StartConfig, StartResult
from agentdeck.engine.adapters.jsonrpc import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    JsonRpcConnection,
)
from agentdeck.engine.adapters.tool_mapping import (
    acp_plan_to_todos,
    derive_tool_name,
    normalize_tool_input,
    normalize_tool_result,
    parse_option_kind,
)
from agentdeck.engine.errors import (
    AuthError,
    ConnectionClosedError,
    ProtocolViolation,
    RevivalError,
    RpcError,
    RpcTimeoutError,
    SessionNotLiveError,
    SpawnError,
)
from agentdeck.engine.yaml_config import AcpAgentConfig
from agentdeck.shared.models.message import ImageAttachment
from agentdeck.shared.models.permission import (
    DecisionOrigin,
    OptionKind,
    PermissionOption,
    PermissionRequest,
)
from agentdeck.shared.models.session import EngineKind

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
AUTH_REQUIRED_CODE = -32000

# Session updates that carry nothing for the timeline.
_IGNORED_UPDATES = frozenset({
    "user_message_chunk",
    "current_mode_update",
    "available_commands_update",
    "config_option_update",
    "session_info_update",
})
_TERMINAL_STATUSES = ("completed", "failed")


@dataclass
class _AcpSession:
    conn: Any
    agent: AcpAgentConfig
    cwd: str
    acp_session_id: str = ""
    reloading: bool = False
    stopping: bool = False
    supports_load: bool = False
    modes: list[dict] = field(default_factory=list)
    model_option_id: str | None = None
    turn: int = 0
    unmapped: int = 0
    pending_tools: set[str] = field(default_factory=set)
    prompt_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    prompt_tasks: set[asyncio.Task] = field(default_factory=set)


def _flatten_options(options: list[Any]) -> list[dict]:
    """Config option values come either flat or grouped."""
    flat: list[dict] = []
    for item in options or []:
        if isinstance(item, dict) and "value" in item:
            flat.append(item)
        elif isinstance(item, dict):
            flat.extend(o for o in item.get("options") or [] if isinstance(o, dict))
    return flat


def _find_model_option(result: dict[str, Any]) -> str | None:
    for option in result.get("configOptions") or []:
        if not isinstance(option, dict):
            continue
        if option.get("id") == "model" or option.get("category") == "model":
            return str(option.get("id"))
    models = result.get("models")
    if isinstance(models, dict) and models.get("availableModels"):
        # Older agents advertise models without config options.
        return "model"
    return None


class AcpAdapter(EngineAdapter):
    """Sessions backed by ACP agent subprocesses, one process per session."""

    def __init__(
        self,
        agents: dict[str, AcpAgentConfig] | None = None,
        *,
        rpc_timeout: float = 30.0,
        connection_factory: Callable[..., Any] = JsonRpcConnection,
    ) -> None:
        super().__init__()
        self._agents = dict(agents or {})
        self._rpc_timeout = rpc_timeout
        self._connection_factory = connection_factory
        self._sessions: dict[str, _AcpSession] = {}

    @property
    def kind(self) -> EngineKind:
        return EngineKind.ACP

    @property
    def agents(self) -> dict[str, AcpAgentConfig]:
        return dict(self._agents)

    def is_available(self) -> bool:
        return any(shutil.which(a.command) for a in self._agents.values())

    def is_live(self, session_id: str) -> bool:
        return session_id in self._sessions

    def live_sessions(self) -> list[str]:
        return list(self._sessions)

    def _require(self, session_id: str) -> _AcpSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotLiveError(self.name, session_id)
        return session

    def _pick_agent(self, agent_id: str | None) -> AcpAgentConfig:
        if agent_id:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise SpawnError(self.name, f"unknown ACP agent '{agent_id}'")
            return agent
        if len(self._agents) == 1:
            return next(iter(self._agents.values()))
        raise SpawnError(
            self.name,
            "no ACP agent selected" if self._agents else "no ACP agents configured",
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, config: StartConfig) -> StartResult:
        session_id = config.session_id
        agent = self._pick_agent(config.agent_id)
        conn = self._connection_factory(
            f"acp:{agent.id}",
            include_jsonrpc_header=True,
            request_handler=lambda method, params: self._on_request(session_id, method, params),
            notification_handler=lambda method, params: self._on_notification(session_id, method, params),
            on_exit=lambda code, stderr: self._on_exit(session_id, code, stderr),
            default_timeout=self._rpc_timeout,
        )
        session = _AcpSession(conn=conn, agent=agent, cwd=config.cwd)

        env = {**os.environ, **agent.env}
        try:
            await conn.spawn([agent.command, *agent.args], cwd=config.cwd, env=env)
        except OSError as exc:
            raise SpawnError(self.name, f"cannot run '{agent.command}': {exc}") from exc

        # Registered before the handshake so replayed notifications find it.
        self._sessions[session_id] = session
        try:
            init = await conn.request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "clientCapabilities": {
                    "fs": {"readTextFile": True, "writeTextFile": True},
                },
            }) or {}
            caps = init.get("agentCapabilities") or {}
            session.supports_load = caps.get("loadSession") is True
            logger.info(
                "ACP agent %s initialized protocol v%s (loadSession=%s)",
                agent.id, init.get("protocolVersion"), session.supports_load,
            )

            if config.resume:
                result = await self._load_session(session, config.resume)
            else:
                result = await conn.request("session/new", {
                    "cwd": config.cwd, "mcpServers": [],
                }) or {}
                session.acp_session_id = str(result.get("sessionId") or "")
                if not session.acp_session_id:
                    raise ProtocolViolation(self.name, "session/new returned no sessionId", result)
        except RpcError as exc:
            await self._abort_start(session_id, session)
            if exc.code == AUTH_REQUIRED_CODE or "auth" in exc.rpc_message.lower():
                raise AuthError(self.name, exc.rpc_message) from exc
            raise SpawnError(self.name, f"{exc.rpc_message} {conn.stderr_tail}".strip()) from exc
        except (RpcTimeoutError, ConnectionClosedError, ProtocolViolation) as exc:
            await self._abort_start(session_id, session)
            raise SpawnError(self.name, f"{exc} {conn.stderr_tail}".strip()) from exc
        except RevivalError:
            await self._abort_start(session_id, session)
            raise

        modes = result.get("modes")
        if isinstance(modes, dict):
            session.modes = [m for m in modes.get("availableModes") or [] if isinstance(m, dict)]
        session.model_option_id = _find_model_option(result)

        if config.model and session.model_option_id:
            await self._apply_model(session, config.model)

        logger.info(
            "ACP session %s attached to agent %s session=%s",
            session_id[:8], agent.id, session.acp_session_id[:12],
        )
        return StartResult(
            session_id=session_id,
            resumption_handle=session.acp_session_id,
            model=config.model,
        )

    async def _load_session(self, session: _AcpSession, handle: str) -> dict[str, Any]:
        if not session.supports_load:
            raise RevivalError(self.name, handle, "agent does not support session/load")
        session.reloading = True
        try:
            result = await session.conn.request("session/load", {
                "sessionId": handle, "cwd": session.cwd, "mcpServers": [],
            }, timeout=self._rpc_timeout * 4) or {}
        except (RpcError, RpcTimeoutError) as exc:
            raise RevivalError(self.name, handle, str(exc)) from exc
        finally:
            session.reloading = False
        session.acp_session_id = str(result.get("sessionId") or handle)
        return result

    async def _abort_start(self, session_id: str, session: _AcpSession) -> None:
        session.stopping = True
        self._sessions.pop(session_id, None)
        await session.conn.close()

    async def send(
        self,
        session_id: str,
        text: str,
        images: list[ImageAttachment] | None = None,
    ) -> None:
        session = self._require(session_id)
        prompt: list[dict[str, Any]] = [
            {"type": "image", "data": img.data, "mimeType": img.media_type}
            for img in images or []
        ]
        prompt.append({"type": "text", "text": text})
        task = asyncio.create_task(self._run_prompt(session_id, session, prompt))
        session.prompt_tasks.add(task)
        task.add_done_callback(session.prompt_tasks.discard)

    async def _run_prompt(
        self, session_id: str, session: _AcpSession, prompt: list[dict[str, Any]],
    ) -> None:
        async with session.prompt_lock:
            session.turn += 1
            await self._emit(session_id, "turn_started")
            try:
                result = await session.conn.request("session/prompt", {
                    "sessionId": session.acp_session_id, "prompt": prompt,
                }, timeout=None) or {}
            except ConnectionClosedError:
                # The exit handler reports the failure.
                return
            except RpcError as exc:
                logger.warning("ACP session %s prompt failed: %s", session_id[:8], exc)
                await self._close_pending_tools(session_id, session)
                await self._emit(
                    session_id, "turn_completed", error=exc.rpc_message or str(exc),
                )
                return
            await self._close_pending_tools(session_id, session)
            stop_reason = result.get("stopReason")
            logger.info("ACP session %s turn ended: %s", session_id[:8], stop_reason)
            await self._emit(session_id, "turn_completed", stop_reason=stop_reason)

    async def _signal_interrupt(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.acp_session_id:
            await session.conn.notify("session/cancel", {"sessionId": session.acp_session_id})

    async def set_mode(self, session_id: str, mode: str) -> None:
        session = self._require(session_id)
        if not any(m.get("id") == mode for m in session.modes):
            await self._notice_once(
                session_id, "set_mode",
                f"{session.agent.name} does not support switching to mode '{mode}'.",
            )
            return
        await session.conn.request("session/set_mode", {
            "sessionId": session.acp_session_id, "modeId": mode,
        })

    async def set_model(self, session_id: str, model: str) -> None:
        session = self._require(session_id)
        if session.model_option_id is None:
            await self._notice_once(
                session_id, "set_model",
                f"{session.agent.name} does not support changing the model.",
            )
            return
        await self._apply_model(session, model)

    async def _apply_model(self, session: _AcpSession, model: str) -> None:
        await session.conn.request("session/set_config_option", {
            "sessionId": session.acp_session_id,
            "configId": session.model_option_id,
            "value": model,
        })

    async def stop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._forget_session(session_id)
        if session is None:
            return
        session.stopping = True
        for task in list(session.prompt_tasks):
            task.cancel()
        await session.conn.close()
        logger.info("ACP session %s stopped", session_id[:8])

    async def _on_exit(self, session_id: str, code: int | None, stderr: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None or session.stopping:
            return
        self._forget_session(session_id)
        await self._emit(
            session_id, "process_exited",
            code=code, error=stderr.strip() or f"{session.agent.name} exited",
        )

    # ── Server requests ───────────────────────────────────────

    async def _on_request(self, session_id: str, method: str, params: Any) -> Any:
        params = params if isinstance(params, dict) else {}
        if method == "session/request_permission":
            return await self._handle_permission(session_id, params)
        if method == "fs/read_text_file":
            return self._read_text_file(params)
        if method == "fs/write_text_file":
            return self._write_text_file(params)
        raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _handle_permission(self, session_id: str, params: dict) -> dict:
        tool_call = params.get("toolCall") or {}
        options = [
            PermissionOption(
                option_id=str(o.get("optionId")),
                kind=parse_option_kind(o.get("kind")),
                name=str(o.get("name", "")),
            )
            for o in params.get("options") or []
            if isinstance(o, dict)
        ]
        request = PermissionRequest(
            session_id=session_id,
            tool_name=derive_tool_name(str(tool_call.get("title", "")), tool_call.get("kind")),
            tool_input=normalize_tool_input(
                tool_call.get("rawInput"), tool_call.get("kind"), tool_call.get("locations"),
            ),
            tool_use_id=str(tool_call.get("toolCallId", "")),
            options=options,
        )
        decision = await self._request_permission(request)
        if decision.origin == DecisionOrigin.FORCED:
            return {"outcome": {"outcome": "cancelled"}}

        option = request.option_by_id(decision.option_id) if decision.option_id else None
        if option is None:
            kinds = (
                (OptionKind.ALLOW_ONCE, OptionKind.ALLOW_ALWAYS)
                if decision.allowed
                else (OptionKind.REJECT_ONCE, OptionKind.REJECT_ALWAYS)
            )
            option = next((o for k in kinds for o in options if o.kind == k), None)
        if option is None:
            return {"outcome": {"outcome": "cancelled"}}
        return {"outcome": {"outcome": "selected", "optionId": option.option_id}}

    @staticmethod
    def _request_path(params: dict) -> Path:
        raw = params.get("path") or params.get("uri") or ""
        if raw.startswith("file://"):
            raw = raw[len("file://"):]
        if not raw:
            raise RpcError(INTERNAL_ERROR, "missing path")
        return Path(raw)

    def _read_text_file(self, params: dict) -> dict:
        path = self._request_path(params)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RpcError(INTERNAL_ERROR, f"cannot read {path}: {exc}") from exc
        line, limit = params.get("line"), params.get("limit")
        if line or limit:
            lines = content.splitlines(keepends=True)
            start = max(int(line or 1) - 1, 0)
            end = start + int(limit) if limit else None
            content = "".join(lines[start:end])
        logger.debug("ACP fs read %s (%d chars)", path, len(content))
        return {"content": content}

    def _write_text_file(self, params: dict) -> None:
        path = self._request_path(params)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(str(params.get("content", "")), encoding="utf-8")
        except OSError as exc:
            raise RpcError(INTERNAL_ERROR, f"cannot write {path}: {exc}") from exc
        logger.debug("ACP fs write %s", path)
        return None

    # ── Notifications ─────────────────────────────────────────

    async def _on_notification(self, session_id: str, method: str, params: Any) -> None:
        if method != "session/update":
            logger.debug("ACP session %s ignoring notification %s", session_id[:8], method)
            return
        session = self._sessions.get(session_id)
        if session is None or not isinstance(params, dict):
            return
        if session.reloading:
            # session/load replays history we already hold.
            return
        if params.get("sessionId") and params["sessionId"] != session.acp_session_id:
            logger.debug("ACP session %s: update for foreign session", session_id[:8])
            return
        update = params.get("update") or {}
        await self._handle_update(session_id, session, update)

    async def _close_pending_tools(self, session_id: str, session: _AcpSession) -> None:
        """Some agents never send a final update for fast tools."""
        for tool_id in sorted(session.pending_tools):
            await self._emit(
                session_id, "tool_result", tool_id=tool_id, result={"status": "completed"},
            )
        session.pending_tools.clear()

    async def _handle_update(self, session_id: str, session: _AcpSession, update: dict) -> None:
        kind = update.get("sessionUpdate")

        if kind in ("agent_message_chunk", "agent_thought_chunk"):
            await self._close_pending_tools(session_id, session)
            content = update.get("content") or {}
            if content.get("type") == "text" and content.get("text"):
                event = "text_delta" if kind == "agent_message_chunk" else "reasoning_delta"
                await self._emit(session_id, event, text=content["text"])
            return

        if kind == "tool_call":
            await self._close_pending_tools(session_id, session)
            await self._emit(session_id, "message_end")
            tool_id = str(update.get("toolCallId", ""))
            status = update.get("status")
            done = status in _TERMINAL_STATUSES
            await self._emit(
                session_id, "tool_started",
                tool_id=tool_id,
                tool_name=derive_tool_name(str(update.get("title", "")), update.get("kind")),
                tool_input=normalize_tool_input(
                    update.get("rawInput"), update.get("kind"), update.get("locations"),
                ),
                completed=done,
                result=normalize_tool_result(update.get("rawOutput"), update.get("content")) if done else None,
                is_error=status == "failed",
            )
            if not done:
                session.pending_tools.add(tool_id)
            return

        if kind == "tool_call_update":
            tool_id = str(update.get("toolCallId", ""))
            status = update.get("status")
            result = normalize_tool_result(update.get("rawOutput"), update.get("content"))
            if status in _TERMINAL_STATUSES:
                session.pending_tools.discard(tool_id)
                if result is None:
                    result = {"status": status}
            if result is None:
                return
            await self._emit(
                session_id, "tool_result",
                tool_id=tool_id, result=result, is_error=status == "failed",
            )
            return

        if kind == "plan":
            todos = acp_plan_to_todos(update.get("entries") or [])
            await self._emit(
                session_id, "tool_started",
                tool_id=f"acp-plan-{session.turn}",
                tool_name="TodoWrite",
                tool_input={"todos": todos},
                completed=True,
                result=f"Plan: {len(todos)} step(s)",
            )
            return

        if kind == "usage_update":
            cost = update.get("cost")
            if isinstance(cost, dict) and cost.get("amount"):
                await self._emit(session_id, "usage", cost=float(cost["amount"]))
            return

        if kind in _IGNORED_UPDATES:
            logger.debug("ACP session %s update %s", session_id[:8], kind)
            return

        violation = ProtocolViolation(self.name, f"session update '{kind}'", update)
        logger.warning("ACP session %s: %s", session_id[:8], violation)
        session.unmapped += 1
        await self._emit(
            session_id, "tool_started",
            tool_id=f"acp-{kind}-{session.turn}-{session.unmapped}",
            tool_name=str(kind),
            tool_input=dict(update),
            completed=True,
        )
