"""Typed events flowing through the orchestration core.

Two families share one codec:

- engine events: emitted by engine adapters as plain dicts through the
  event callback, already normalized to the canonical vocabulary, and
  consumed by the streaming assembler;
- presentation events: emitted by the session registry onto the
  EventBus for the presentation layer.

Every dict carries ``"event"`` (the type) and ``"session_id"``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class DeckEvent:
    """Base event."""
    event_type: str = ""
    session_id: str = ""


# ── Engine events (adapter → assembler) ───────────────────────


@dataclass
class TurnStarted(DeckEvent):
    event_type: str = "turn_started"


@dataclass
class MessageStart(DeckEvent):
    """A new assistant message begins streaming."""
    event_type: str = "message_start"
    parent_tool_use_id: str | None = None


@dataclass
class TextDelta(DeckEvent):
    event_type: str = "text_delta"
    text: str = ""
    fragment_id: str | None = None
    parent_tool_use_id: str | None = None


@dataclass
class ReasoningDelta(DeckEvent):
    event_type: str = "reasoning_delta"
    text: str = ""
    fragment_id: str | None = None
    parent_tool_use_id: str | None = None


@dataclass
class MessageEnd(DeckEvent):
    event_type: str = "message_end"
    parent_tool_use_id: str | None = None


@dataclass
class AssistantSnapshot(DeckEvent):
    """Full content of an assistant message as the backend currently sees it."""
    event_type: str = "assistant_snapshot"
    text: str = ""
    thinking: str = ""
    parent_tool_use_id: str | None = None


@dataclass
class ToolStarted(DeckEvent):
    event_type: str = "tool_started"
    tool_id: str = ""
    tool_name: str = ""
    tool_input: dict = field(default_factory=dict)
    parent_tool_use_id: str | None = None
    # Some backends announce a tool call that already finished.
    result: Any = None
    is_error: bool = False
    completed: bool = False


@dataclass
class ToolResult(DeckEvent):
    event_type: str = "tool_result"
    tool_id: str = ""
    result: Any = None
    is_error: bool = False
    parent_tool_use_id: str | None = None
    tool_input: dict | None = None


@dataclass
class ToolOutputDelta(DeckEvent):
    event_type: str = "tool_output_delta"
    tool_id: str = ""
    delta: str = ""


@dataclass
class UserEcho(DeckEvent):
    """Backend replayed a user message (checkpoint stamp or compaction text)."""
    event_type: str = "user_echo"
    text: str = ""
    checkpoint_id: str | None = None


@dataclass
class CompactBoundary(DeckEvent):
    event_type: str = "compact_boundary"
    trigger: str | None = None
    pre_tokens: int | None = None


@dataclass
class SystemNotice(DeckEvent):
    event_type: str = "system_notice"
    text: str = ""
    is_error: bool = False


@dataclass
class Usage(DeckEvent):
    event_type: str = "usage"
    cost: float = 0.0


@dataclass
class TurnCompleted(DeckEvent):
    event_type: str = "turn_completed"
    cost: float = 0.0
    error: str | None = None
    stop_reason: str | None = None


@dataclass
class HandleUpdated(DeckEvent):
    """Backend reported the id needed to resume this conversation later."""
    event_type: str = "handle_updated"
    resumption_handle: str = ""
    model: str | None = None


@dataclass
class AuthRequired(DeckEvent):
    event_type: str = "auth_required"
    engine: str = ""
    message: str = ""


@dataclass
class ProcessExited(DeckEvent):
    event_type: str = "process_exited"
    code: int | None = None
    error: str | None = None


# ── Presentation events (registry → EventBus) ─────────────────


@dataclass
class ForegroundTimelineChanged(DeckEvent):
    event_type: str = "foreground_timeline_changed"
    message_count: int = 0
    is_processing: bool = False


@dataclass
class SessionListChanged(DeckEvent):
    event_type: str = "session_list_changed"
    reason: str = ""


@dataclass
class PermissionRequested(DeckEvent):
    event_type: str = "permission_requested"
    request_id: str = ""
    tool_name: str = ""
    tool_input: dict = field(default_factory=dict)
    options: list = field(default_factory=list)


@dataclass
class PermissionResolved(DeckEvent):
    event_type: str = "permission_resolved"
    request_id: str = ""
    behavior: str = ""
    origin: str = ""


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[DeckEvent]] = {
    "turn_started": TurnStarted,
    "message_start": MessageStart,
    "text_delta": TextDelta,
    "reasoning_delta": ReasoningDelta,
    "message_end": MessageEnd,
    "assistant_snapshot": AssistantSnapshot,
    "tool_started": ToolStarted,
    "tool_result": ToolResult,
    "tool_output_delta": ToolOutputDelta,
    "user_echo": UserEcho,
    "compact_boundary": CompactBoundary,
    "system_notice": SystemNotice,
    "usage": Usage,
    "turn_completed": TurnCompleted,
    "handle_updated": HandleUpdated,
    "auth_required": AuthRequired,
    "process_exited": ProcessExited,
    "foreground_timeline_changed": ForegroundTimelineChanged,
    "session_list_changed": SessionListChanged,
    "permission_requested": PermissionRequested,
    "permission_resolved": PermissionResolved,
}


def event_to_dict(event: DeckEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" for consistency with adapter callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> DeckEvent:
    """Convert an adapter callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, DeckEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
