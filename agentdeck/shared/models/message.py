"""Canonical timeline entries shared by every engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    SUMMARY = "summary"


@dataclass
class ImageAttachment:
    data: str  # base64
    media_type: str = "image/png"

    def data_uri(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


@dataclass
class SubagentStep:
    """A nested tool call made by a Task/Agent tool on behalf of its parent."""
    tool_use_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_result: Any = None
    tool_error: bool = False


@dataclass
class CanonicalMessage:
    """One engine-agnostic entry in a session timeline.

    The ``role`` tag selects which of the optional fields are meaningful:

    - user: ``images``, ``is_queued``, ``checkpoint_id``
    - assistant: ``thinking``, ``thinking_complete``, ``is_streaming``
    - tool_call: ``tool_name``, ``tool_input``, ``tool_result``,
      ``tool_error``, ``subagent_steps``
    - system: ``is_error``
    - summary: ``compact_trigger``, ``pre_tokens``
    """
    role: MessageRole
    content: str = ""
    id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    # user
    images: list[ImageAttachment] = field(default_factory=list)
    is_queued: bool = False
    checkpoint_id: str | None = None
    # assistant
    thinking: str | None = None
    thinking_complete: bool = False
    is_streaming: bool = False
    # tool_call / tool_result
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_result: Any = None
    tool_error: bool = False
    tool_use_id: str | None = None
    subagent_steps: list[SubagentStep] | None = None
    # system
    is_error: bool = False
    # summary
    compact_trigger: str | None = None
    pre_tokens: int | None = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_message_id(self.role.value)

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.thinking


def user_message(
    text: str,
    *,
    images: list[ImageAttachment] | None = None,
    queued: bool = False,
) -> CanonicalMessage:
    return CanonicalMessage(
        role=MessageRole.USER,
        content=text,
        id=new_message_id("user-queued" if queued else "user"),
        images=list(images or []),
        is_queued=queued,
    )


def system_message(text: str, *, is_error: bool = False) -> CanonicalMessage:
    return CanonicalMessage(
        role=MessageRole.SYSTEM,
        content=text,
        id=new_message_id("system-error" if is_error else "system"),
        is_error=is_error,
    )
