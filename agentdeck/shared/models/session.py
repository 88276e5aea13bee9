"""Session metadata and live per-session state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import re
import uuid

from agentdeck.shared.models.message import CanonicalMessage
from agentdeck.shared.models.permission import PermissionPolicy, PermissionRequest


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


TITLE_MAX_CHARS = 60
DEFAULT_TITLE = "New chat"


class EngineKind(Enum):
    CLAUDE = "claude"
    ACP = "acp"
    CODEX = "codex"


def derive_title(text: str) -> str:
    collapsed = re.sub(r"\s+", " ", text).strip()
    if not collapsed:
        return DEFAULT_TITLE
    if len(collapsed) <= TITLE_MAX_CHARS:
        return collapsed
    return collapsed[: TITLE_MAX_CHARS - 3].rstrip() + "..."


@dataclass
class Session:
    """A conversation bound to one project and one engine."""

    project_id: str
    engine: EngineKind
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    model: str | None = None
    agent_id: str | None = None
    cwd: str = "."
    title: str = DEFAULT_TITLE
    created_at: datetime = field(default_factory=_utcnow)
    last_message_at: datetime | None = None
    total_cost: float = 0.0
    is_processing: bool = False
    is_connected: bool = False
    resumption_handle: str | None = None
    permission_mode: str = "default"
    permission_policy: PermissionPolicy = PermissionPolicy.ASK
    # True once a backend process has ever been attached; engine is then fixed.
    has_backend: bool = False


@dataclass
class SessionState:
    """Live state of one session; also the payload of a background snapshot."""

    session_id: str
    messages: list[CanonicalMessage] = field(default_factory=list)
    is_processing: bool = False
    is_connected: bool = False
    total_cost: float = 0.0
    resumption_handle: str | None = None
    streaming_message_id: str | None = None
    parent_tool_map: dict[str, str] = field(default_factory=dict)
    pending_summary_id: str | None = None
    pending_permission: PermissionRequest | None = None
    applied_fragments: set[str] = field(default_factory=set)
    # Index into messages where the current turn began.
    turn_start_index: int = 0

    def find(self, message_id: str | None) -> CanonicalMessage | None:
        if not message_id:
            return None
        for msg in reversed(self.messages):
            if msg.id == message_id:
                return msg
        return None

    def append(self, message: CanonicalMessage) -> CanonicalMessage:
        if self.find(message.id) is not None:
            raise ValueError(f"duplicate message id {message.id}")
        self.messages.append(message)
        return message

    def remove(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    @property
    def streaming_message(self) -> CanonicalMessage | None:
        return self.find(self.streaming_message_id)
