"""In-memory snapshots of sessions that are not in the foreground.

Holds the live SessionState of every session the user switched away
from during this run, so events that keep arriving for a background
session land somewhere and a switch back shows exactly what happened.
Snapshots are never the durable record; that is the persisted file.
"""
from __future__ import annotations

import copy
import logging

from agentdeck.engine.assembler import rebuild_cursor
from agentdeck.shared.models.session import SessionState

logger = logging.getLogger(__name__)


class BackgroundStateStore:

    def __init__(self) -> None:
        self._states: dict[str, SessionState] = {}

    def capture(self, session_id: str, state: SessionState) -> None:
        """Take ownership of a session's live state, replacing any prior snapshot."""
        self._states[session_id] = state
        logger.debug(
            "Captured background state for %s (%d messages, processing=%s)",
            session_id[:8], len(state.messages), state.is_processing,
        )

    def init_from_state(self, session_id: str, state: SessionState) -> SessionState:
        """Seed a snapshot from a copy of ``state``, recovering its cursors."""
        seeded = copy.deepcopy(state)
        seeded.session_id = session_id
        seeded.parent_tool_map = {}
        rebuild_cursor(seeded)
        self._states[session_id] = seeded
        return seeded

    def has(self, session_id: str) -> bool:
        return session_id in self._states

    def get(self, session_id: str) -> SessionState | None:
        """The stored state itself; events for the session are applied to it."""
        return self._states.get(session_id)

    def restore(self, session_id: str) -> SessionState | None:
        """Hand a snapshot back to the foreground and drop it from the store."""
        state = self._states.pop(session_id, None)
        if state is not None:
            logger.debug("Restored background state for %s", session_id[:8])
        return state

    consume = restore

    def delete(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    def mark_disconnected(self, session_id: str) -> None:
        """Backend is gone: nothing is processing and nothing can be approved."""
        state = self._states.get(session_id)
        if state is None:
            return
        state.is_connected = False
        state.is_processing = False
        state.pending_permission = None
        state.streaming_message_id = None
        for msg in state.messages:
            msg.is_streaming = False

    def session_ids(self) -> list[str]:
        return list(self._states)

    def __len__(self) -> int:
        return len(self._states)
