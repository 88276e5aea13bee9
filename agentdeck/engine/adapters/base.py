"""Abstract base for engine adapters.

Each adapter wraps one agent backend family (Claude Agent SDK, ACP
agents, the Codex app server) and hides its transport behind a small
session-oriented contract. One adapter instance serves every session
of its engine kind; sessions are keyed by the registry's session id,
never by the backend's own conversation id.

Adapters report everything that happens through two callbacks bound by
the session registry:

- the event callback receives canonical engine events as dicts
  (``{"event": ..., "session_id": ..., ...}``);
- the permission callback receives a PermissionRequest and resolves
  with the user's (or policy's) PermissionDecision.
"""
from __future__ import annotations

import abc
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentdeck.engine.config import (
    EventCallback,
    PermissionCallback,
    fire_event,
)
from agentdeck.shared.models.message import ImageAttachment
from agentdeck.shared.models.permission import (
    DecisionOrigin,
    PermissionDecision,
    PermissionRequest,
)
from agentdeck.shared.models.session import EngineKind

logger = logging.getLogger(__name__)


@dataclass
class StartConfig:
    """What an adapter needs to attach a backend to a session."""
    session_id: str
    cwd: str = "."
    model: str | None = None
    permission_mode: str = "default"
    # Backend conversation id to resume; None starts fresh.
    resume: str | None = None
    agent_id: str | None = None


@dataclass
class StartResult:
    session_id: str
    resumption_handle: str | None = None
    model: str | None = None


class EngineAdapter(abc.ABC):
    """Abstract engine adapter interface.

    Implementations:
    - ClaudeAdapter: Claude Agent SDK (ClaudeSDKClient)
    - AcpAdapter: any ACP agent over JSON-RPC stdio
    - CodexAdapter: ``codex app-server`` over JSON-RPC stdio
    """

    def __init__(self) -> None:
        self._event_callback: EventCallback | None = None
        self._permission_callback: PermissionCallback | None = None
        self._deny_pending: Callable[[str], int] | None = None
        self._notified: set[tuple[str, str]] = set()

    @property
    @abc.abstractmethod
    def kind(self) -> EngineKind:
        """Engine kind this adapter serves."""

    @property
    def name(self) -> str:
        return self.kind.value

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check whether the backend runtime is installed."""

    def bind(
        self,
        event_callback: EventCallback | None,
        permission_callback: PermissionCallback | None,
        deny_pending: Callable[[str], int] | None = None,
    ) -> None:
        """Wire the registry's callbacks. Called once before any start()."""
        self._event_callback = event_callback
        self._permission_callback = permission_callback
        self._deny_pending = deny_pending

    # ── Session lifecycle ─────────────────────────────────────

    @abc.abstractmethod
    async def start(self, config: StartConfig) -> StartResult:
        """Attach a backend to a session.

        Raises SpawnError, AuthError, or RevivalError when
        ``config.resume`` was given and cannot be honored.
        """

    @abc.abstractmethod
    async def send(
        self,
        session_id: str,
        text: str,
        images: list[ImageAttachment] | None = None,
    ) -> None:
        """Start a turn with the given user input."""

    async def interrupt(self, session_id: str) -> None:
        """Deny everything pending for the session, then stop the turn."""
        if self._deny_pending is not None:
            self._deny_pending(session_id)
        try:
            await self._signal_interrupt(session_id)
        except Exception as exc:
            logger.warning(
                "%s interrupt for session %s failed: %s",
                self.name, session_id[:8], exc,
            )

    @abc.abstractmethod
    async def _signal_interrupt(self, session_id: str) -> None:
        """Tell the backend to abandon the running turn (best effort)."""

    @abc.abstractmethod
    async def set_mode(self, session_id: str, mode: str) -> None:
        """Change the backend permission mode, or notify once if unsupported."""

    @abc.abstractmethod
    async def set_model(self, session_id: str, model: str) -> None:
        """Change the model, or notify once if unsupported."""

    async def revert_files(self, session_id: str, checkpoint_id: str) -> bool:
        """Restore files to their state at a user message's checkpoint."""
        await self._notice_once(
            session_id, "revert_files",
            f"{self.name} does not support reverting file changes.",
        )
        return False

    @abc.abstractmethod
    async def stop(self, session_id: str) -> None:
        """Detach and terminate the session's backend."""

    @abc.abstractmethod
    def is_live(self, session_id: str) -> bool:
        """True while the session has a running backend."""

    @abc.abstractmethod
    def live_sessions(self) -> list[str]:
        """Registry ids of every session with a running backend."""

    async def shutdown(self) -> None:
        """Stop every live session."""
        for session_id in list(self.live_sessions()):
            try:
                await self.stop(session_id)
            except Exception as exc:
                logger.error(
                    "Error stopping %s session %s: %s",
                    self.name, session_id[:8], exc,
                )

    # ── Helpers for subclasses ────────────────────────────────

    async def _emit(self, session_id: str, event: str, **fields: Any) -> None:
        await fire_event(self._event_callback, {
            "event": event,
            "session_id": session_id,
            **fields,
        })

    async def _notice_once(self, session_id: str, operation: str, text: str) -> None:
        """System notice emitted at most once per (session, operation)."""
        key = (session_id, operation)
        if key in self._notified:
            return
        self._notified.add(key)
        await self._emit(session_id, "system_notice", text=text)

    async def _request_permission(self, request: PermissionRequest) -> PermissionDecision:
        if self._permission_callback is None:
            logger.warning(
                "%s: no permission handler bound, denying %s",
                self.name, request.tool_name,
            )
            return PermissionDecision.deny(
                "No permission handler", origin=DecisionOrigin.FORCED,
            )
        return await self._permission_callback(request)

    def _forget_session(self, session_id: str) -> None:
        self._notified = {k for k in self._notified if k[0] != session_id}

    @staticmethod
    def resolve_command(command: str, fallback: str | None = None) -> str:
        """Prefer the configured command, then the fallback, when on PATH."""
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug("Command %s not found; falling back to %s", command, fallback)
            return fallback
        return command or (fallback or "")
