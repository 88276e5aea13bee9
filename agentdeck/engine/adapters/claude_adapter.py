"""Claude engine adapter.

Wraps claude_agent_sdk.ClaudeSDKClient: one client per session, kept
connected between turns, with a reader task translating the SDK's
message stream into canonical engine events.

The SDK is imported lazily so the rest of the package (and its tests)
works without it installed.
"""
from __future__ import annotations

import asyncio
import importlib.util
import logging
import os
import shutil
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentdeck.engine.adapters.base import EngineAdapter, StartConfig, StartResult
from agentdeck.engine.adapters.tool_mapping import format_result_error
from agentdeck.engine.errors import (
    EngineError,
    RevivalError,
    SessionNotLiveError,
    SpawnError,
)
from agentdeck.shared.models.message import ImageAttachment
from agentdeck.shared.models.permission import (
    OptionKind,
    PermissionOption,
    PermissionRequest,
)
from agentdeck.shared.models.session import EngineKind

logger = logging.getLogger(__name__)

_LIMIT_SUBTYPES = frozenset({
    "error_max_turns",
    "error_max_budget_usd",
    "error_max_structured_output_retries",
})
_MISSING_CONVERSATION_MARKERS = ("No conversation found", "session not found")


@dataclass
class _ClaudeSession:
    client: Any
    model: str | None = None
    handle: str | None = None
    reader_task: asyncio.Task | None = None
    stopping: bool = False
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=20))


def _permission_options() -> list[PermissionOption]:
    return [
        PermissionOption("allow", OptionKind.ALLOW_ONCE, "Allow"),
        PermissionOption("allow_always", OptionKind.ALLOW_ALWAYS, "Always allow"),
        PermissionOption("deny", OptionKind.REJECT_ONCE, "Deny"),
    ]


def _tool_result_payload(structured: Any, content: Any) -> dict[str, Any] | str | None:
    """Prefer the SDK's structured tool result, fall back to block text."""
    text: str | None = None
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts = [
            item.get("text", "") for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        text = "\n".join(parts) if parts else None
    if isinstance(structured, dict):
        result = dict(structured)
        if text is not None:
            result.setdefault("content", text)
        return result
    if text is not None:
        return {"content": text}
    return None


class ClaudeAdapter(EngineAdapter):
    """Claude Agent SDK sessions."""

    def __init__(self, cli_path: str | None = None) -> None:
        super().__init__()
        self._cli_path = cli_path
        self._sessions: dict[str, _ClaudeSession] = {}

    @property
    def kind(self) -> EngineKind:
        return EngineKind.CLAUDE

    def is_available(self) -> bool:
        if self._cli_path:
            return shutil.which(self._cli_path) is not None
        return importlib.util.find_spec("claude_agent_sdk") is not None

    def is_live(self, session_id: str) -> bool:
        return session_id in self._sessions

    def live_sessions(self) -> list[str]:
        return list(self._sessions)

    def _require(self, session_id: str) -> _ClaudeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotLiveError(self.name, session_id)
        return session

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, config: StartConfig) -> StartResult:
        # Import SDK lazily to avoid import errors when SDK
        # is not installed (e.g., during unit testing)
        from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
        from claude_agent_sdk import ClaudeSDKError

        session_id = config.session_id
        stderr_tail: deque = deque(maxlen=20)

        def _on_stderr(line: str) -> None:
            stderr_tail.append(line)
            logger.debug("claude[%s] stderr: %s", session_id[:8], line.rstrip())

        async def _can_use_tool(tool_name: str, tool_input: dict, context: Any = None):
            return await self._check_permission(session_id, tool_name, tool_input, context)

        options_kwargs: dict[str, Any] = {
            "cwd": config.cwd,
            "permission_mode": config.permission_mode,
            "include_partial_messages": True,
            "can_use_tool": _can_use_tool,
            "stderr": _on_stderr,
            # Replayed user messages carry the uuids used as revert checkpoints.
            "enable_file_checkpointing": True,
            "extra_args": {"replay-user-messages": None},
        }
        if config.model:
            options_kwargs["model"] = config.model
        if config.resume:
            options_kwargs["resume"] = config.resume
        if self._cli_path:
            resolved = shutil.which(self._cli_path)
            if resolved:
                options_kwargs["cli_path"] = resolved
            else:
                logger.warning(
                    "Configured Claude CLI not found: %s; falling back to SDK default",
                    self._cli_path,
                )
        # The CLI refuses to launch as a nested session when this is set.
        os.environ.pop("CLAUDECODE", None)

        logger.info(
            "Claude session %s starting model=%s mode=%s resume=%s cwd=%s",
            session_id[:8], config.model, config.permission_mode,
            (config.resume or "")[:8] or None, config.cwd,
        )
        client = ClaudeSDKClient(options=ClaudeAgentOptions(**options_kwargs))
        try:
            await client.connect()
        except ClaudeSDKError as exc:
            detail = str(exc) or "\n".join(stderr_tail)
            if config.resume and any(m in detail for m in _MISSING_CONVERSATION_MARKERS):
                raise RevivalError(self.name, config.resume, detail) from exc
            raise SpawnError(self.name, detail) from exc
        except OSError as exc:
            raise SpawnError(self.name, str(exc)) from exc

        session = _ClaudeSession(
            client=client,
            model=config.model,
            handle=config.resume,
            stderr_tail=stderr_tail,
        )
        self._sessions[session_id] = session
        session.reader_task = asyncio.create_task(self._read_messages(session_id, session))
        return StartResult(
            session_id=session_id,
            resumption_handle=config.resume,
            model=config.model,
        )

    async def send(
        self,
        session_id: str,
        text: str,
        images: list[ImageAttachment] | None = None,
    ) -> None:
        from claude_agent_sdk import ClaudeSDKError

        session = self._require(session_id)
        await self._emit(session_id, "turn_started")
        try:
            await session.client.query(self._prompt(text, images))
        except ClaudeSDKError as exc:
            raise EngineError(self.name, f"send failed: {exc}") from exc

    @staticmethod
    def _prompt(
        text: str, images: list[ImageAttachment] | None,
    ) -> str | AsyncIterator[dict[str, Any]]:
        if not images:
            return text

        content: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": img.media_type,
                    "data": img.data,
                },
            }
            for img in images
        ]
        content.append({"type": "text", "text": text})

        async def _prompt_stream() -> AsyncIterator[dict[str, Any]]:
            yield {
                "type": "user",
                "message": {"role": "user", "content": content},
                "parent_tool_use_id": None,
            }

        return _prompt_stream()

    async def _signal_interrupt(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            await session.client.interrupt()

    async def set_mode(self, session_id: str, mode: str) -> None:
        session = self._require(session_id)
        await session.client.set_permission_mode(mode)
        logger.info("Claude session %s permission mode -> %s", session_id[:8], mode)

    async def set_model(self, session_id: str, model: str) -> None:
        session = self._require(session_id)
        await session.client.set_model(model)
        session.model = model
        logger.info("Claude session %s model -> %s", session_id[:8], model)

    async def revert_files(self, session_id: str, checkpoint_id: str) -> bool:
        from claude_agent_sdk import ClaudeSDKError

        session = self._require(session_id)
        try:
            await session.client.rewind_files(checkpoint_id)
        except ClaudeSDKError as exc:
            raise EngineError(self.name, f"revert failed: {exc}") from exc
        logger.info(
            "Claude session %s files reverted to checkpoint %s",
            session_id[:8], checkpoint_id[:8],
        )
        return True

    async def stop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._forget_session(session_id)
        if session is None:
            return
        session.stopping = True
        task = session.reader_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await session.client.disconnect()
        except Exception as exc:
            logger.warning("Claude session %s disconnect failed: %s", session_id[:8], exc)
        logger.info("Claude session %s stopped", session_id[:8])

    # ── Permissions ───────────────────────────────────────────

    async def _check_permission(
        self, session_id: str, tool_name: str, tool_input: dict, context: Any = None,
    ):
        """can_use_tool callback: route the ask through the permission bridge."""
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        request = PermissionRequest(
            session_id=session_id,
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            tool_use_id=str(getattr(context, "tool_use_id", "") or ""),
            options=_permission_options(),
        )
        logger.info(
            "PERM_CHECK session=%s tool=%s request=%s",
            session_id[:8], tool_name, request.request_id[:8],
        )
        decision = await self._request_permission(request)
        if decision.allowed:
            return PermissionResultAllow(
                updated_input=decision.updated_input or dict(tool_input or {}),
            )
        return PermissionResultDeny(message=decision.message or "Denied by user")

    # ── Message translation ───────────────────────────────────

    async def _read_messages(self, session_id: str, session: _ClaudeSession) -> None:
        error: str | None = None
        try:
            async for message in session.client.receive_messages():
                try:
                    await self._translate(session_id, session, message)
                except Exception:
                    logger.exception(
                        "Claude session %s: failed to translate %s",
                        session_id[:8], type(message).__name__,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("Claude session %s reader failed: %s", session_id[:8], error)

        if session.stopping:
            return
        self._sessions.pop(session_id, None)
        if error is None:
            error = "\n".join(session.stderr_tail) or "Claude process ended"
        await self._emit(session_id, "process_exited", code=None, error=error)

    async def _translate(self, session_id: str, session: _ClaudeSession, message: Any) -> None:
        parent = getattr(message, "parent_tool_use_id", None)

        stream_event = getattr(message, "event", None)
        if isinstance(stream_event, dict):
            await self._translate_stream(
                session_id, stream_event, parent, getattr(message, "uuid", None),
            )
            return

        if hasattr(message, "total_cost_usd") or hasattr(message, "num_turns"):
            await self._translate_result(session_id, session, message)
            return

        if hasattr(message, "subtype") and hasattr(message, "data"):
            await self._translate_system(session_id, session, message)
            return

        content = getattr(message, "content", None)
        if content is None:
            logger.debug("Claude session %s: ignoring %s", session_id[:8], type(message).__name__)
            return
        if hasattr(message, "model"):
            await self._translate_assistant(session_id, message, parent)
        else:
            await self._translate_user(session_id, message, parent)

    async def _translate_stream(
        self, session_id: str, event: dict, parent: str | None, uuid: str | None,
    ) -> None:
        event_type = event.get("type")
        if event_type == "message_start":
            await self._emit(session_id, "message_start", parent_tool_use_id=parent)
        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                await self._emit(
                    session_id, "text_delta",
                    text=delta.get("text", ""), fragment_id=uuid,
                    parent_tool_use_id=parent,
                )
            elif delta.get("type") == "thinking_delta":
                await self._emit(
                    session_id, "reasoning_delta",
                    text=delta.get("thinking", ""), fragment_id=uuid,
                    parent_tool_use_id=parent,
                )
        elif event_type == "message_delta":
            await self._emit(session_id, "message_end", parent_tool_use_id=parent)

    async def _translate_assistant(
        self, session_id: str, message: Any, parent: str | None,
    ) -> None:
        texts: list[str] = []
        thinking: list[str] = []
        tool_uses: list[Any] = []
        for block in message.content:
            if hasattr(block, "thinking"):
                thinking.append(str(block.thinking or ""))
            elif hasattr(block, "text"):
                texts.append(block.text)
            elif hasattr(block, "name") and hasattr(block, "input"):
                tool_uses.append(block)

        if getattr(message, "error", None) == "authentication_failed":
            await self._emit(
                session_id, "auth_required",
                engine=self.name,
                message="".join(texts) or "Claude requires login. Run `claude login`.",
            )
            return

        if texts or thinking:
            await self._emit(
                session_id, "assistant_snapshot",
                text="".join(texts), thinking="".join(thinking),
                parent_tool_use_id=parent,
            )
        for block in tool_uses:
            logger.info(
                "Claude session %s tool_use id=%s name=%s",
                session_id[:8], str(getattr(block, "id", ""))[:12], block.name,
            )
            await self._emit(
                session_id, "tool_started",
                tool_id=getattr(block, "id", ""),
                tool_name=block.name,
                tool_input=block.input if isinstance(block.input, dict) else {"raw": block.input},
                parent_tool_use_id=parent,
            )

    async def _translate_user(
        self, session_id: str, message: Any, parent: str | None,
    ) -> None:
        content = message.content
        if isinstance(content, str):
            text = content.strip()
            if text and parent is None:
                await self._emit(
                    session_id, "user_echo",
                    text=text, checkpoint_id=getattr(message, "uuid", None),
                )
            return

        texts: list[str] = []
        for block in content:
            if hasattr(block, "tool_use_id"):
                is_error = bool(getattr(block, "is_error", False))
                await self._emit(
                    session_id, "tool_result",
                    tool_id=block.tool_use_id,
                    result=_tool_result_payload(
                        getattr(message, "tool_use_result", None),
                        getattr(block, "content", None),
                    ),
                    is_error=is_error,
                    parent_tool_use_id=parent,
                )
            elif hasattr(block, "text"):
                texts.append(block.text)
        if texts and parent is None:
            await self._emit(
                session_id, "user_echo",
                text="\n".join(texts), checkpoint_id=getattr(message, "uuid", None),
            )

    async def _translate_system(
        self, session_id: str, session: _ClaudeSession, message: Any,
    ) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        if message.subtype == "init":
            handle = data.get("session_id")
            model = data.get("model")
            if model:
                session.model = model
            if handle:
                session.handle = handle
                logger.info(
                    "Claude session %s init handle=%s model=%s",
                    session_id[:8], handle[:8], model,
                )
                await self._emit(
                    session_id, "handle_updated",
                    resumption_handle=handle, model=model,
                )
        elif message.subtype == "compact_boundary":
            meta = data.get("compact_metadata") or {}
            await self._emit(
                session_id, "compact_boundary",
                trigger="manual" if meta.get("trigger") == "manual" else "auto",
                pre_tokens=meta.get("pre_tokens"),
            )
        else:
            logger.debug("Claude session %s system %s", session_id[:8], message.subtype)

    async def _translate_result(
        self, session_id: str, session: _ClaudeSession, message: Any,
    ) -> None:
        subtype = getattr(message, "subtype", None)
        logger.info(
            "Claude session %s result subtype=%s cost=%s turns=%s",
            session_id[:8], subtype,
            getattr(message, "total_cost_usd", None), getattr(message, "num_turns", None),
        )
        handle = getattr(message, "session_id", None)
        if handle and handle != session.handle:
            session.handle = handle
            await self._emit(
                session_id, "handle_updated",
                resumption_handle=handle, model=session.model,
            )

        error: str | None = None
        if getattr(message, "is_error", False) or subtype in _LIMIT_SUBTYPES:
            errors = getattr(message, "errors", None)
            detail = "\n".join(errors) if errors else getattr(message, "result", None)
            error = format_result_error(subtype, detail or "An error occurred")
        await self._emit(
            session_id, "turn_completed",
            cost=float(getattr(message, "total_cost_usd", None) or 0.0),
            error=error,
            stop_reason=subtype,
        )
