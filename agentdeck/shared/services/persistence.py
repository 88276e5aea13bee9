"""Session persistence: one JSON record per session.

Storage layout:
    {data_dir}/sessions/{project_id}/{session_id}.json

The record is the only durable artifact of the core; everything needed
to show a session after restart and to re-attach to its backend lives
in it. Writes go through atomic_write_json so a crash never leaves a
half-written record behind.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agentdeck.shared.models.message import (
    CanonicalMessage,
    ImageAttachment,
    MessageRole,
    SubagentStep,
)
from agentdeck.shared.models.session import EngineKind, Session
from agentdeck.shared.services.durable_write import (
    atomic_write_json,
    durable_unlink,
)

logger = logging.getLogger(__name__)

RECORD_VERSION = "1"
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class PersistedSession:
    session: Session
    messages: list[CanonicalMessage]
    saved_at: datetime | None = None


def _project_dirname(project_id: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", project_id) or "_"


class SessionPersistence:
    """Save, load, list and delete session records."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, project_id: str, session_id: str) -> Path:
        return self._base_dir / _project_dirname(project_id) / f"{session_id}.json"

    def save(self, session: Session, messages: list[CanonicalMessage]) -> Path:
        """Serialize the session and its full timeline."""
        data = {
            "version": RECORD_VERSION,
            "id": session.id,
            "project_id": session.project_id,
            "title": session.title,
            "created_at": session.created_at.isoformat(),
            "last_message_at": (
                session.last_message_at.isoformat()
                if session.last_message_at else None
            ),
            "messages": [_message_to_dict(m) for m in messages],
            "model": session.model,
            "total_cost": session.total_cost,
            "engine": session.engine.value,
            "resumption_handle": session.resumption_handle,
            "agent_id": session.agent_id,
            "cwd": session.cwd,
            "permission_mode": session.permission_mode,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        path = self.path_for(session.project_id, session.id)
        atomic_write_json(path, data)
        logger.info(
            "Session %s saved to %s (%d messages)",
            session.id[:8], path, len(messages),
        )
        return path

    def exists(self, project_id: str, session_id: str) -> bool:
        return self.path_for(project_id, session_id).exists()

    def load(self, project_id: str, session_id: str) -> PersistedSession:
        """Deserialize a session record. Raises FileNotFoundError if absent."""
        path = self.path_for(project_id, session_id)
        data = json.loads(path.read_text(encoding="utf-8"))
        messages = [_dict_to_message(m) for m in data.get("messages", [])]
        # A record written mid-stream must not come back as still streaming.
        for msg in messages:
            msg.is_streaming = False
        return PersistedSession(
            session=_dict_to_session(data, fallback_id=session_id),
            messages=messages,
            saved_at=_parse_timestamp(data.get("saved_at")),
        )

    def list_sessions(self, project_id: str) -> list[Session]:
        """Session metadata for a project, most recently active first."""
        project_dir = self._base_dir / _project_dirname(project_id)
        if not project_dir.exists():
            return []
        sessions: list[Session] = []
        for path in project_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                sessions.append(_dict_to_session(data, fallback_id=path.stem))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable session record %s: %s", path, exc)
        sessions.sort(
            key=lambda s: s.last_message_at or s.created_at, reverse=True,
        )
        return sessions

    def delete(self, project_id: str, session_id: str) -> bool:
        removed = durable_unlink(self.path_for(project_id, session_id))
        if removed:
            logger.info("Session %s record deleted", session_id[:8])
        return removed


def _ensure_aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (assume UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return _ensure_aware(datetime.fromisoformat(value))


def _dict_to_session(data: dict, *, fallback_id: str) -> Session:
    created_at = _parse_timestamp(data.get("created_at"))
    kwargs: dict[str, Any] = dict(
        id=str(data.get("id") or fallback_id),
        project_id=data["project_id"],
        engine=EngineKind(data.get("engine", EngineKind.CLAUDE.value)),
        title=data.get("title") or "New chat",
        last_message_at=_parse_timestamp(data.get("last_message_at")),
        model=data.get("model"),
        total_cost=float(data.get("total_cost") or 0.0),
        resumption_handle=data.get("resumption_handle"),
        agent_id=data.get("agent_id"),
        cwd=data.get("cwd") or ".",
        permission_mode=data.get("permission_mode") or "default",
        has_backend=bool(data.get("resumption_handle")),
    )
    if created_at:
        kwargs["created_at"] = created_at
    return Session(**kwargs)


def _step_to_dict(step: SubagentStep) -> dict:
    return {
        "tool_use_id": step.tool_use_id,
        "tool_name": step.tool_name,
        "tool_input": step.tool_input,
        "tool_result": step.tool_result,
        "tool_error": step.tool_error,
    }


def _message_to_dict(msg: CanonicalMessage) -> dict:
    return {
        "id": msg.id,
        "role": msg.role.value,
        "content": msg.content,
        "timestamp": msg.timestamp.isoformat(),
        "images": [
            {"data": img.data, "media_type": img.media_type}
            for img in msg.images
        ],
        "is_queued": msg.is_queued,
        "checkpoint_id": msg.checkpoint_id,
        "thinking": msg.thinking,
        "thinking_complete": msg.thinking_complete,
        "is_streaming": msg.is_streaming,
        "tool_name": msg.tool_name,
        "tool_input": msg.tool_input,
        "tool_result": msg.tool_result,
        "tool_error": msg.tool_error,
        "tool_use_id": msg.tool_use_id,
        "subagent_steps": (
            [_step_to_dict(s) for s in msg.subagent_steps]
            if msg.subagent_steps is not None else None
        ),
        "is_error": msg.is_error,
        "compact_trigger": msg.compact_trigger,
        "pre_tokens": msg.pre_tokens,
    }


def _dict_to_message(data: dict) -> CanonicalMessage:
    steps = data.get("subagent_steps")
    return CanonicalMessage(
        role=MessageRole(data["role"]),
        content=data.get("content", ""),
        id=data["id"],
        timestamp=_ensure_aware(datetime.fromisoformat(data["timestamp"])),
        images=[
            ImageAttachment(data=img["data"], media_type=img.get("media_type", "image/png"))
            for img in data.get("images", [])
        ],
        is_queued=data.get("is_queued", False),
        checkpoint_id=data.get("checkpoint_id"),
        thinking=data.get("thinking"),
        thinking_complete=data.get("thinking_complete", False),
        is_streaming=data.get("is_streaming", False),
        tool_name=data.get("tool_name"),
        tool_input=data.get("tool_input"),
        tool_result=data.get("tool_result"),
        tool_error=data.get("tool_error", False),
        tool_use_id=data.get("tool_use_id"),
        subagent_steps=(
            [
                SubagentStep(
                    tool_use_id=s["tool_use_id"],
                    tool_name=s["tool_name"],
                    tool_input=s.get("tool_input") or {},
                    tool_result=s.get("tool_result"),
                    tool_error=s.get("tool_error", False),
                )
                for s in steps
            ]
            if steps is not None else None
        ),
        is_error=data.get("is_error", False),
        compact_trigger=data.get("compact_trigger"),
        pre_tokens=data.get("pre_tokens"),
    )
