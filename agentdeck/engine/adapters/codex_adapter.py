"""Codex engine adapter.

Drives ``codex app-server`` over JSON-RPC (the ``"jsonrpc"`` member is
omitted on the wire). One app-server process per session; the Codex
thread id is the session's resumption handle.

Codex reports work as thread items with a started/completed lifecycle
plus streaming deltas. Tool-like items are mapped to the canonical tool
shape by tool_mapping; agent messages and reasoning become assistant
text and thinking.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentdeck.engine.adapters.base import EngineAdapter, StartConfig, StartResult
from agentdeck.engine.adapters.jsonrpc import METHOD_NOT_FOUND, JsonRpcConnection
from agentdeck.engine.adapters.tool_mapping import (
    codex_item_failed,
    codex_item_tool_input,
    codex_item_tool_name,
    codex_item_tool_result,
    codex_plan_to_todos,
    permission_mode_to_codex_policy,
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
    TurnBusyError,
)
from agentdeck.shared.models.message import ImageAttachment
from agentdeck.shared.models.permission import (
    OptionKind,
    PermissionOption,
    PermissionRequest,
)
from agentdeck.shared.models.session import EngineKind

logger = logging.getLogger(__name__)

CLIENT_INFO = {"name": "agentdeck", "title": "agentdeck", "version": "0.1.0"}
USER_INPUT_DECLINED = -32001

# Items that are neither tools nor assistant output.
_NON_TOOL_ITEMS = frozenset({
    "agentMessage",
    "reasoning",
    "plan",
    "userMessage",
    "contextCompaction",
    "enteredReviewMode",
    "exitedReviewMode",
})


@dataclass
class _CodexSession:
    conn: Any
    cwd: str
    thread_id: str = ""
    model: str | None = None
    permission_mode: str = "default"
    active_turn_id: str | None = None
    stopping: bool = False
    plan_text: str = ""
    plan_turn: int = 0
    # item id -> (tool name, tool input) for approvals that reference an item
    items: dict[str, tuple[str, dict]] = field(default_factory=dict)


def _approval_options() -> list[PermissionOption]:
    return [
        PermissionOption("accept", OptionKind.ALLOW_ONCE, "Accept"),
        PermissionOption("acceptForSession", OptionKind.ALLOW_ALWAYS, "Accept for session"),
        PermissionOption("decline", OptionKind.REJECT_ONCE, "Decline"),
    ]


class CodexAdapter(EngineAdapter):
    """Codex app-server sessions."""

    def __init__(
        self,
        command: str = "codex",
        *,
        api_key_env: str | None = None,
        rpc_timeout: float = 30.0,
        connection_factory: Callable[..., Any] = JsonRpcConnection,
    ) -> None:
        super().__init__()
        self._command = command
        self._api_key_env = api_key_env
        self._rpc_timeout = rpc_timeout
        self._connection_factory = connection_factory
        self._sessions: dict[str, _CodexSession] = {}

    @property
    def kind(self) -> EngineKind:
        return EngineKind.CODEX

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def is_live(self, session_id: str) -> bool:
        return session_id in self._sessions

    def live_sessions(self) -> list[str]:
        return list(self._sessions)

    def _require(self, session_id: str) -> _CodexSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotLiveError(self.name, session_id)
        return session

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._api_key_env and self._api_key_env != "OPENAI_API_KEY":
            value = os.environ.get(self._api_key_env)
            if value:
                env["OPENAI_API_KEY"] = value
        return env

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, config: StartConfig) -> StartResult:
        session_id = config.session_id
        conn = self._connection_factory(
            "codex",
            include_jsonrpc_header=False,
            request_handler=lambda method, params: self._on_request(session_id, method, params),
            notification_handler=lambda method, params: self._on_notification(session_id, method, params),
            on_exit=lambda code, stderr: self._on_exit(session_id, code, stderr),
            default_timeout=self._rpc_timeout,
        )
        session = _CodexSession(
            conn=conn,
            cwd=config.cwd,
            model=config.model,
            permission_mode=config.permission_mode,
        )
        try:
            await conn.spawn(
                [self.resolve_command(self._command), "app-server"],
                cwd=config.cwd, env=self._build_env(),
            )
        except OSError as exc:
            raise SpawnError(self.name, f"cannot run '{self._command}': {exc}") from exc
        self._sessions[session_id] = session

        try:
            init = await conn.request("initialize", {"clientInfo": CLIENT_INFO})
            await conn.notify("initialized", {})
            logger.info("Codex session %s initialized: %s", session_id[:8], str(init)[:200])

            account = await conn.request("account/read", {"refreshToken": False}) or {}
            if account.get("requiresOpenaiAuth") and not account.get("account"):
                raise AuthError(self.name, "OpenAI login required; run `codex login`")

            if config.resume:
                thread = await self._resume_thread(session, config.resume)
            else:
                params: dict[str, Any] = {
                    "cwd": config.cwd,
                    "experimentalRawEvents": False,
                    "persistExtendedHistory": False,
                }
                if config.model:
                    params["model"] = config.model
                policy = permission_mode_to_codex_policy(config.permission_mode)
                if policy:
                    params["approvalPolicy"] = policy
                thread = await conn.request("thread/start", params) or {}
        except (AuthError, RevivalError):
            await self._abort_start(session_id, session)
            raise
        except (RpcError, RpcTimeoutError, ConnectionClosedError) as exc:
            await self._abort_start(session_id, session)
            raise SpawnError(self.name, f"{exc} {conn.stderr_tail}".strip()) from exc

        thread_info = thread.get("thread") or {}
        session.thread_id = str(thread_info.get("id") or config.resume or "")
        if not session.thread_id:
            await self._abort_start(session_id, session)
            raise SpawnError(self.name, str(ProtocolViolation(self.name, "thread without id", thread)))
        if thread.get("model"):
            session.model = thread["model"]
        logger.info("Codex session %s thread %s", session_id[:8], session.thread_id[:12])
        return StartResult(
            session_id=session_id,
            resumption_handle=session.thread_id,
            model=session.model,
        )

    async def _resume_thread(self, session: _CodexSession, thread_id: str) -> dict[str, Any]:
        try:
            return await session.conn.request("thread/resume", {
                "threadId": thread_id, "persistExtendedHistory": False,
            }) or {}
        except (RpcError, RpcTimeoutError) as exc:
            raise RevivalError(self.name, thread_id, str(exc)) from exc

    async def _abort_start(self, session_id: str, session: _CodexSession) -> None:
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
        if session.active_turn_id:
            raise TurnBusyError(self.name, session_id)
        user_input: list[dict[str, Any]] = [{"type": "text", "text": text}]
        user_input.extend({"type": "image", "url": img.data_uri()} for img in images or [])
        params: dict[str, Any] = {"threadId": session.thread_id, "input": user_input}
        if session.model:
            params["model"] = session.model
        result = await session.conn.request("turn/start", params) or {}
        turn_id = (result.get("turn") or {}).get("id")
        if turn_id and session.active_turn_id is None:
            session.active_turn_id = turn_id
        logger.info(
            "Codex session %s turn started %s", session_id[:8], str(turn_id)[:12],
        )

    async def _signal_interrupt(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or not session.active_turn_id:
            return
        await session.conn.request("turn/interrupt", {
            "threadId": session.thread_id, "turnId": session.active_turn_id,
        })

    async def set_mode(self, session_id: str, mode: str) -> None:
        session = self._require(session_id)
        session.permission_mode = mode
        await self._notice_once(
            session_id, "set_mode",
            "Codex fixes its approval policy when a thread starts; "
            "the new permission mode applies to new sessions.",
        )

    async def set_model(self, session_id: str, model: str) -> None:
        session = self._require(session_id)
        session.model = model
        logger.info("Codex session %s model -> %s (next turn)", session_id[:8], model)

    async def stop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._forget_session(session_id)
        if session is None:
            return
        session.stopping = True
        await session.conn.close()
        logger.info("Codex session %s stopped", session_id[:8])

    async def _on_exit(self, session_id: str, code: int | None, stderr: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None or session.stopping:
            return
        self._forget_session(session_id)
        await self._emit(
            session_id, "process_exited",
            code=code, error=stderr.strip() or f"codex app-server exited (code {code})",
        )

    # ── Server requests ───────────────────────────────────────

    async def _on_request(self, session_id: str, method: str, params: Any) -> Any:
        params = params if isinstance(params, dict) else {}
        if method in (
            "item/commandExecution/requestApproval",
            "item/fileChange/requestApproval",
        ):
            return await self._handle_approval(session_id, method, params)
        if method == "item/tool/requestUserInput":
            return await self._handle_user_input(session_id, params)
        logger.warning("Codex session %s unsupported server request %s", session_id[:8], method)
        raise RpcError(METHOD_NOT_FOUND, f"Unsupported server request: {method}")

    async def _handle_approval(self, session_id: str, method: str, params: dict) -> dict:
        session = self._sessions.get(session_id)
        item_id = str(params.get("itemId", ""))
        known = session.items.get(item_id) if session else None
        if known is not None:
            tool_name, tool_input = known
        elif method == "item/commandExecution/requestApproval":
            tool_name = "Bash"
            tool_input = {"command": params["command"]} if params.get("command") else {}
        else:
            tool_name, tool_input = "Edit", {}
        if params.get("reason"):
            tool_input = {**tool_input, "description": params["reason"]}

        request = PermissionRequest(
            session_id=session_id,
            tool_name=tool_name,
            tool_input=dict(tool_input),
            tool_use_id=item_id,
            options=_approval_options(),
        )
        decision = await self._request_permission(request)
        option = request.option_by_id(decision.option_id) if decision.option_id else None
        if not decision.allowed:
            return {"decision": "decline"}
        if option is not None:
            return {"decision": option.option_id}
        return {"decision": "acceptForSession" if decision.for_session else "accept"}

    async def _handle_user_input(self, session_id: str, params: dict) -> dict:
        questions = [
            {
                "id": q.get("id"),
                "header": q.get("header"),
                "question": q.get("question"),
                "options": q.get("options"),
                "multiSelect": False,
            }
            for q in params.get("questions") or []
            if isinstance(q, dict)
        ]
        request = PermissionRequest(
            session_id=session_id,
            tool_name="AskUserQuestion",
            tool_input={"source": "codex_request_user_input", "questions": questions},
            tool_use_id=str(params.get("itemId", "")),
            options=[
                PermissionOption("submit", OptionKind.ALLOW_ONCE, "Submit"),
                PermissionOption("decline", OptionKind.REJECT_ONCE, "Decline"),
            ],
        )
        decision = await self._request_permission(request)
        if not decision.allowed:
            raise RpcError(USER_INPUT_DECLINED, "User declined requestUserInput")
        raw = (decision.updated_input or {}).get("answersByQuestionId") or {}
        answers: dict[str, dict[str, list[str]]] = {}
        for question_id, values in raw.items():
            cleaned = [str(v).strip() for v in values or [] if str(v).strip()]
            if cleaned:
                answers[str(question_id)] = {"answers": cleaned}
        return {"answers": answers}

    # ── Notifications ─────────────────────────────────────────

    async def _on_notification(self, session_id: str, method: str, params: Any) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        params = params if isinstance(params, dict) else {}

        if method == "turn/started":
            session.active_turn_id = (params.get("turn") or {}).get("id")
            session.plan_text = ""
            session.plan_turn += 1
            await self._emit(session_id, "turn_started")
        elif method == "turn/completed":
            await self._on_turn_completed(session_id, session, params)
        elif method == "item/started":
            await self._on_item_started(session_id, session, params.get("item") or {})
        elif method == "item/completed":
            await self._on_item_completed(session_id, session, params.get("item") or {})
        elif method == "item/agentMessage/delta":
            await self._emit(session_id, "text_delta", text=str(params.get("delta", "")))
        elif method in ("item/reasoning/textDelta", "item/reasoning/summaryTextDelta"):
            await self._emit(session_id, "reasoning_delta", text=str(params.get("delta", "")))
        elif method == "item/commandExecution/outputDelta":
            await self._emit(
                session_id, "tool_output_delta",
                tool_id=str(params.get("itemId", "")), delta=str(params.get("delta", "")),
            )
        elif method == "item/plan/delta":
            delta = params.get("delta")
            if isinstance(delta, str) and delta:
                session.plan_text += delta
                await self._emit(
                    session_id, "tool_started",
                    tool_id=f"plan-stream-{session.plan_turn}",
                    tool_name="ExitPlanMode",
                    tool_input={"plan": session.plan_text},
                )
        elif method == "turn/plan/updated":
            await self._on_plan_updated(session_id, session, params)
        elif method == "thread/compacted":
            await self._emit(session_id, "compact_boundary", trigger="auto")
            await self._emit(session_id, "user_echo", text="Context compacted")
        elif method == "error":
            error = params.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else None
            await self._emit(
                session_id, "system_notice",
                text=str(message or "Unknown error"), is_error=True,
            )
        else:
            logger.debug("Codex session %s ignoring %s", session_id[:8], method)

    async def _on_turn_completed(
        self, session_id: str, session: _CodexSession, params: dict,
    ) -> None:
        session.active_turn_id = None
        turn = params.get("turn") or {}
        status = turn.get("status")
        error = None
        if status == "failed":
            turn_error = turn.get("error") or {}
            error = (
                turn_error.get("message") if isinstance(turn_error, dict) else None
            ) or "Codex turn failed"
        logger.info("Codex session %s turn completed status=%s", session_id[:8], status)
        await self._emit(session_id, "turn_completed", error=error, stop_reason=status)

    async def _on_item_started(
        self, session_id: str, session: _CodexSession, item: dict,
    ) -> None:
        item_type = item.get("type")
        if item_type in ("agentMessage", "reasoning"):
            return
        # Any other item is a hard boundary for the assistant stream.
        await self._emit(session_id, "message_end")
        if item_type in _NON_TOOL_ITEMS:
            return
        item_id = str(item.get("id", ""))
        tool_name = codex_item_tool_name(item)
        if tool_name is None:
            violation = ProtocolViolation(self.name, f"item type '{item_type}'", item)
            logger.warning("Codex session %s: %s", session_id[:8], violation)
            tool_name, tool_input = str(item_type or "unknown"), dict(item)
        else:
            tool_input = codex_item_tool_input(item)
        session.items[item_id] = (tool_name, tool_input)
        await self._emit(
            session_id, "tool_started",
            tool_id=item_id, tool_name=tool_name, tool_input=tool_input,
        )

    async def _on_item_completed(
        self, session_id: str, session: _CodexSession, item: dict,
    ) -> None:
        item_type = item.get("type")
        item_id = str(item.get("id", ""))

        if item_type == "agentMessage":
            text = item.get("text")
            if isinstance(text, str) and text:
                await self._emit(session_id, "assistant_snapshot", text=text)
            await self._emit(session_id, "message_end")
            return
        if item_type == "reasoning":
            return
        if item_type == "plan":
            text = item.get("text") if isinstance(item.get("text"), str) else session.plan_text
            if text:
                await self._emit(
                    session_id, "tool_started",
                    tool_id=f"plan-stream-{session.plan_turn}",
                    tool_name="ExitPlanMode",
                    tool_input={"plan": text},
                    completed=True,
                    result={"type": "plan"},
                )
            return
        if item_type in _NON_TOOL_ITEMS:
            return

        if codex_item_tool_name(item) is None:
            result: Any = dict(item)
            tool_input = None
        else:
            result = codex_item_tool_result(item) or {"status": item.get("status") or "completed"}
            tool_input = codex_item_tool_input(item)
        session.items.pop(item_id, None)
        await self._emit(
            session_id, "tool_result",
            tool_id=item_id, result=result,
            is_error=codex_item_failed(item), tool_input=tool_input,
        )

    async def _on_plan_updated(
        self, session_id: str, session: _CodexSession, params: dict,
    ) -> None:
        steps = params.get("plan")
        if not isinstance(steps, list):
            return
        todos = codex_plan_to_todos(steps)
        tool_input: dict[str, Any] = {"todos": todos}
        if params.get("explanation"):
            tool_input["explanation"] = params["explanation"]
        count = len(steps)
        await self._emit(
            session_id, "tool_started",
            tool_id=f"plan-update-{session.plan_turn}",
            tool_name="TodoWrite",
            tool_input=tool_input,
            completed=True,
            result={"content": f"Plan: {count} step{'s' if count != 1 else ''}"},
        )
