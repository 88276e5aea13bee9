"""Streaming assembler: canonical engine events → timeline entries.

Adapters hand over already-normalized events (text and reasoning
deltas, full-message snapshots, tool starts and results, turn
boundaries). The assembler owns the only code that mutates a
session's timeline in response to them, which keeps the timeline
append-only: entries are appended, and the single entry currently
streaming is the only one mutated in place.

Backends differ in how they deliver one logical assistant turn:

- token deltas followed by a full snapshot of the same message
  (the snapshot must not duplicate what the deltas already produced);
- a reasoning-only message followed by a text-only message
  (both must end up in one visible entry);
- nested tool calls made by a sub-agent tool, tagged with the parent
  tool-use id (they are folded into the parent's step list).
"""
from __future__ import annotations

import logging
from collections.abc import Callable

from agentdeck.adapters.events import (
    AssistantSnapshot,
    AuthRequired,
    CompactBoundary,
    DeckEvent,
    HandleUpdated,
    MessageEnd,
    MessageStart,
    ProcessExited,
    ReasoningDelta,
    SystemNotice,
    TextDelta,
    ToolOutputDelta,
    ToolResult,
    ToolStarted,
    TurnCompleted,
    TurnStarted,
    Usage,
    UserEcho,
)
from agentdeck.shared.models.message import (
    CanonicalMessage,
    MessageRole,
    SubagentStep,
    new_message_id,
    system_message,
)
from agentdeck.shared.models.session import SessionState

logger = logging.getLogger(__name__)

# Tools whose nested calls arrive tagged with their tool-use id.
SUBAGENT_TOOLS = frozenset({"Task", "Agent"})


def tool_message_id(tool_id: str) -> str:
    return f"tool-{tool_id}"


def merge_fragment(existing: str, incoming: str) -> str:
    """Merge a full-content snapshot into what has been assembled so far.

    Only the part of ``incoming`` not already present is appended. A
    snapshot that is a prefix of (or equal to) the existing content is a
    no-op; a snapshot that diverges replaces the content.
    """
    if not incoming or incoming == existing:
        return existing
    if not existing:
        return incoming
    if incoming.startswith(existing):
        return existing + incoming[len(existing):]
    if existing.startswith(incoming):
        return existing
    return incoming


def _compatible(existing: str, incoming: str) -> bool:
    return (
        not existing
        or not incoming
        or incoming.startswith(existing)
        or existing.startswith(incoming)
    )


def clear_streaming(state: SessionState) -> None:
    """Close the streaming entry and drop every leftover streaming flag."""
    for msg in state.messages:
        if msg.is_streaming:
            msg.is_streaming = False
            if msg.thinking:
                msg.thinking_complete = True
    state.streaming_message_id = None
    state.applied_fragments.clear()


def rebuild_cursor(state: SessionState) -> None:
    """Recover the parent-tool map and streaming cursor from the timeline."""
    for msg in state.messages:
        if (
            msg.role == MessageRole.TOOL_CALL
            and msg.subagent_steps is not None
            and msg.tool_use_id
        ):
            state.parent_tool_map[msg.tool_use_id] = msg.id
    state.streaming_message_id = None
    for msg in reversed(state.messages):
        if msg.is_streaming:
            state.streaming_message_id = msg.id
            break


class StreamingAssembler:
    """Applies canonical engine events to a SessionState.

    Stateless itself; every cursor it needs lives on the SessionState,
    so the same instance serves every session and a background snapshot
    carries everything needed to resume assembly after a switch.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[SessionState, DeckEvent], bool]] = {
            "turn_started": self._on_turn_started,
            "message_start": self._on_message_start,
            "text_delta": self._on_text_delta,
            "reasoning_delta": self._on_reasoning_delta,
            "message_end": self._on_message_end,
            "assistant_snapshot": self._on_assistant_snapshot,
            "tool_started": self._on_tool_started,
            "tool_result": self._on_tool_result,
            "tool_output_delta": self._on_tool_output_delta,
            "user_echo": self._on_user_echo,
            "compact_boundary": self._on_compact_boundary,
            "system_notice": self._on_system_notice,
            "usage": self._on_usage,
            "turn_completed": self._on_turn_completed,
            "handle_updated": self._on_handle_updated,
            "auth_required": self._on_auth_required,
            "process_exited": self._on_process_exited,
        }

    def apply(self, state: SessionState, event: DeckEvent) -> bool:
        """Apply one event. Returns True when the timeline or flags changed."""
        if event.session_id and event.session_id != state.session_id:
            logger.error(
                "Refusing event %s for session %s on state of %s",
                event.event_type, event.session_id[:8], state.session_id[:8],
            )
            return False
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("Assembler ignoring event type %s", event.event_type)
            return False
        return handler(state, event)

    def begin_turn(self, state: SessionState) -> None:
        """Mark the start of a turn right after the user entry was appended."""
        state.is_processing = True
        state.turn_start_index = len(state.messages)

    # ── Streaming helpers ─────────────────────────────────────

    def _ensure_streaming(self, state: SessionState) -> CanonicalMessage:
        msg = state.streaming_message
        if msg is not None and msg.is_streaming:
            return msg
        msg = CanonicalMessage(
            role=MessageRole.ASSISTANT,
            id=new_message_id("assistant"),
            is_streaming=True,
        )
        state.append(msg)
        state.streaming_message_id = msg.id
        state.applied_fragments.clear()
        return msg

    def finalize_streaming(self, state: SessionState) -> None:
        msg = state.streaming_message
        state.streaming_message_id = None
        state.applied_fragments.clear()
        if msg is None:
            return
        msg.is_streaming = False
        if msg.thinking:
            msg.thinking_complete = True
        if msg.is_empty:
            state.remove(msg.id)

    @staticmethod
    def _is_subagent(parent: str | None) -> bool:
        return bool(parent)

    def _seen_fragment(self, state: SessionState, fragment_id: str | None) -> bool:
        if not fragment_id:
            return False
        if fragment_id in state.applied_fragments:
            logger.debug("Skipping replayed fragment %s", fragment_id[:12])
            return True
        state.applied_fragments.add(fragment_id)
        return False

    # ── Handlers ──────────────────────────────────────────────

    def _on_turn_started(self, state: SessionState, event: TurnStarted) -> bool:
        state.is_processing = True
        state.is_connected = True
        return True

    def _on_message_start(self, state: SessionState, event: MessageStart) -> bool:
        if self._is_subagent(event.parent_tool_use_id):
            return False
        self.finalize_streaming(state)
        self._ensure_streaming(state)
        return True

    def _on_text_delta(self, state: SessionState, event: TextDelta) -> bool:
        if not event.text or self._is_subagent(event.parent_tool_use_id):
            return False
        msg = self._ensure_streaming(state)
        if self._seen_fragment(state, event.fragment_id):
            return False
        if msg.thinking and not msg.thinking_complete:
            msg.thinking_complete = True
        msg.content += event.text
        return True

    def _on_reasoning_delta(self, state: SessionState, event: ReasoningDelta) -> bool:
        if not event.text or self._is_subagent(event.parent_tool_use_id):
            return False
        msg = self._ensure_streaming(state)
        if self._seen_fragment(state, event.fragment_id):
            return False
        msg.thinking = (msg.thinking or "") + event.text
        return True

    def _on_message_end(self, state: SessionState, event: MessageEnd) -> bool:
        if self._is_subagent(event.parent_tool_use_id):
            return False
        self.finalize_streaming(state)
        return True

    def _on_assistant_snapshot(
        self, state: SessionState, event: AssistantSnapshot,
    ) -> bool:
        if self._is_subagent(event.parent_tool_use_id):
            return False
        text, thinking = event.text, event.thinking
        if not text and not thinking:
            return False

        target = state.streaming_message
        if target is None and state.messages:
            last = state.messages[-1]
            in_turn = len(state.messages) - 1 >= state.turn_start_index
            if (
                in_turn
                and last.role == MessageRole.ASSISTANT
                and _compatible(last.content, text)
                and _compatible(last.thinking or "", thinking)
            ):
                # Reasoning and text for one turn delivered as two messages.
                target = last

        if target is None:
            state.append(CanonicalMessage(
                role=MessageRole.ASSISTANT,
                id=new_message_id("assistant"),
                content=text,
                thinking=thinking or None,
                thinking_complete=bool(thinking),
            ))
            return True

        before = (target.content, target.thinking)
        target.content = merge_fragment(target.content, text)
        if thinking:
            target.thinking = merge_fragment(target.thinking or "", thinking)
        if target.thinking and (text or not target.is_streaming):
            target.thinking_complete = True
        return before != (target.content, target.thinking)

    def _find_step(
        self, state: SessionState, tool_use_id: str,
    ) -> SubagentStep | None:
        for msg_id in state.parent_tool_map.values():
            parent = state.find(msg_id)
            for step in (parent.subagent_steps if parent else None) or []:
                if step.tool_use_id == tool_use_id:
                    return step
        return None

    def _on_tool_started(self, state: SessionState, event: ToolStarted) -> bool:
        parent_id = event.parent_tool_use_id
        if parent_id:
            parent = state.find(state.parent_tool_map.get(parent_id))
            if parent is not None:
                if parent.subagent_steps is None:
                    parent.subagent_steps = []
                step = self._find_step(state, event.tool_id)
                if step is None:
                    parent.subagent_steps.append(SubagentStep(
                        tool_use_id=event.tool_id,
                        tool_name=event.tool_name,
                        tool_input=dict(event.tool_input or {}),
                    ))
                elif event.tool_input:
                    step.tool_input = dict(event.tool_input)
                return True
            logger.warning(
                "Nested tool %s references unknown parent %s; adding at top level",
                event.tool_id[:12], parent_id[:12],
            )

        self.finalize_streaming(state)
        msg_id = tool_message_id(event.tool_id)
        existing = state.find(msg_id)
        if existing is not None:
            if event.tool_input:
                existing.tool_input = dict(event.tool_input)
            if event.completed:
                existing.tool_result = event.result
                existing.tool_error = event.is_error
            return True

        msg = CanonicalMessage(
            role=MessageRole.TOOL_CALL,
            id=msg_id,
            tool_name=event.tool_name,
            tool_input=dict(event.tool_input or {}),
            tool_use_id=event.tool_id,
        )
        if event.completed:
            msg.tool_result = event.result
            msg.tool_error = event.is_error
        if event.tool_name in SUBAGENT_TOOLS:
            msg.subagent_steps = []
            state.parent_tool_map[event.tool_id] = msg_id
        state.append(msg)
        return True

    def _on_tool_result(self, state: SessionState, event: ToolResult) -> bool:
        parent_id = event.parent_tool_use_id
        step = None
        if parent_id and parent_id in state.parent_tool_map:
            step = self._find_step(state, event.tool_id)
        msg = None if step else state.find(tool_message_id(event.tool_id))
        if msg is None and step is None:
            step = self._find_step(state, event.tool_id)

        if step is not None:
            step.tool_result = event.result
            step.tool_error = event.is_error
            return True
        if msg is not None:
            msg.tool_result = event.result
            msg.tool_error = event.is_error
            if event.tool_input:
                msg.tool_input = dict(event.tool_input)
            return True

        # No invocation to fold into; keep it visible rather than lose it.
        state.append(CanonicalMessage(
            role=MessageRole.TOOL_RESULT,
            id=new_message_id("tool-result"),
            tool_use_id=event.tool_id,
            tool_result=event.result,
            tool_error=event.is_error,
        ))
        return True

    def _on_tool_output_delta(
        self, state: SessionState, event: ToolOutputDelta,
    ) -> bool:
        msg = state.find(tool_message_id(event.tool_id))
        if msg is None or not event.delta:
            return False
        current = msg.tool_result if isinstance(msg.tool_result, dict) else {}
        stdout = current.get("stdout")
        if not isinstance(stdout, str):
            stdout = current.get("content") if isinstance(current.get("content"), str) else ""
        msg.tool_result = {**current, "type": "text", "stdout": stdout + event.delta}
        return True

    def _on_user_echo(self, state: SessionState, event: UserEcho) -> bool:
        self.finalize_streaming(state)
        if state.pending_summary_id and event.text:
            summary = state.find(state.pending_summary_id)
            state.pending_summary_id = None
            if summary is not None:
                summary.content = event.text
                return True
        if event.checkpoint_id:
            for msg in state.messages:
                if (
                    msg.role == MessageRole.USER
                    and not msg.is_queued
                    and msg.checkpoint_id is None
                ):
                    msg.checkpoint_id = event.checkpoint_id
                    return True
        return False

    def _on_compact_boundary(
        self, state: SessionState, event: CompactBoundary,
    ) -> bool:
        self.finalize_streaming(state)
        summary = CanonicalMessage(
            role=MessageRole.SUMMARY,
            id=new_message_id("summary"),
            compact_trigger=event.trigger,
            pre_tokens=event.pre_tokens,
        )
        state.append(summary)
        state.pending_summary_id = summary.id
        return True

    def _on_system_notice(self, state: SessionState, event: SystemNotice) -> bool:
        if not event.text:
            return False
        state.append(system_message(event.text, is_error=event.is_error))
        return True

    def _on_usage(self, state: SessionState, event: Usage) -> bool:
        if not event.cost:
            return False
        state.total_cost += event.cost
        return True

    def _on_turn_completed(self, state: SessionState, event: TurnCompleted) -> bool:
        self.finalize_streaming(state)
        clear_streaming(state)
        state.total_cost += event.cost or 0.0
        if event.error:
            state.append(system_message(event.error, is_error=True))
        state.is_processing = False
        return True

    def _on_handle_updated(self, state: SessionState, event: HandleUpdated) -> bool:
        if not event.resumption_handle:
            return False
        state.resumption_handle = event.resumption_handle
        state.is_connected = True
        return True

    def _on_auth_required(self, state: SessionState, event: AuthRequired) -> bool:
        text = event.message or f"{event.engine or 'Agent'} requires login."
        state.append(system_message(text, is_error=True))
        state.is_processing = False
        return True

    def _on_process_exited(self, state: SessionState, event: ProcessExited) -> bool:
        self.finalize_streaming(state)
        clear_streaming(state)
        state.is_processing = False
        state.is_connected = False
        state.pending_permission = None
        abnormal = event.error or (event.code not in (None, 0))
        if abnormal:
            detail = event.error or f"exit code {event.code}"
            state.append(system_message(
                f"Agent process exited unexpectedly ({detail}).", is_error=True,
            ))
        return True
