"""Session registry: owns every session and the foreground pointer.

The registry is the only component the presentation layer talks to.
Sessions live in an arena keyed by opaque id; the foreground pointer is
written exclusively by ``switch_session``. Live state for the foreground
session is held here, every other session's live state sits in the
BackgroundStateStore, and the persisted record on disk is the durable
truth for anything not live.

Adapters report through two callbacks bound at construction:
engine events are routed by session id to the matching SessionState
and applied by the StreamingAssembler; permission requests go through
the per-session allow-for-session memory and then the PermissionBridge.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Coroutine
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    AuthRequired,
    DeckEvent,
    ForegroundTimelineChanged,
    HandleUpdated,
    PermissionRequested,
    PermissionResolved,
    SessionListChanged,
    dict_to_event,
)
from agentdeck.engine.adapters.base import EngineAdapter, StartConfig, StartResult
from agentdeck.engine.adapters.registry import AdapterRegistry, build_adapter_registry
from agentdeck.engine.assembler import StreamingAssembler, clear_streaming, rebuild_cursor
from agentdeck.engine.background import BackgroundStateStore
from agentdeck.engine.errors import (
    AgentDeckError,
    AuthError,
    RevivalError,
    SessionNotFoundError,
    SpawnError,
)
from agentdeck.engine.permissions import PermissionBridge, decision_for_option
from agentdeck.shared.models.message import (
    CanonicalMessage,
    ImageAttachment,
    MessageRole,
    system_message,
    user_message,
)
from agentdeck.shared.models.permission import (
    DecisionOrigin,
    OptionKind,
    PermissionDecision,
    PermissionPolicy,
    PermissionRequest,
)
from agentdeck.shared.models.session import (
    DEFAULT_TITLE,
    EngineKind,
    Session,
    SessionState,
    derive_title,
)
from agentdeck.shared.services.persistence import SessionPersistence

if TYPE_CHECKING:
    from agentdeck.engine.yaml_config import DeckConfig

logger = logging.getLogger(__name__)

REVIVAL_NOTICE = (
    "Could not resume the previous conversation; continuing in a new one. "
    "Earlier messages are kept as history."
)
QUEUED_SEND_FAILED = "Failed to send queued message."

# Tools whose approval carries an answer; a standing allow would skip it.
_NEVER_REMEMBERED = frozenset({"AskUserQuestion", "ExitPlanMode"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    """Creates, switches, drives and persists sessions across engines."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        persistence: SessionPersistence,
        *,
        event_bus: EventBus | None = None,
        project_id: str = "default",
        default_engine: EngineKind | str = EngineKind.CLAUDE,
        default_model: str | None = None,
        default_agent: str | None = None,
        permission_mode: str = "default",
        permission_policy: PermissionPolicy | str = PermissionPolicy.ASK,
    ) -> None:
        self.event_bus = event_bus or EventBus()
        self._adapters = adapters
        self._persistence = persistence
        self._project_id = project_id
        self._default_engine = EngineKind(default_engine)
        self._default_model = default_model
        self._default_agent = default_agent
        self._permission_mode = permission_mode
        self._permission_policy = PermissionPolicy.parse(permission_policy)

        self._assembler = StreamingAssembler()
        self._background = BackgroundStateStore()
        self._bridge = PermissionBridge(
            on_surface=self._on_permission_surfaced,
            on_resolved=self._on_permission_resolved,
        )

        self._sessions: dict[str, Session] = {}
        self._foreground_id: str | None = None
        self._foreground_state: SessionState | None = None
        # Queued user entry ids per session, flushed FIFO.
        self._queues: dict[str, deque[str]] = {}
        self._flushing: set[str] = set()
        self._allowed_for_session: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task] = set()

        for adapter in adapters.all():
            adapter.bind(
                self._on_engine_event,
                self._on_permission_request,
                self._bridge.deny_all,
            )

    @classmethod
    def from_config(
        cls,
        config: DeckConfig,
        *,
        project_id: str = "default",
        event_bus: EventBus | None = None,
    ) -> SessionRegistry:
        engine = config.engine
        defaults = config.defaults
        default_agent = defaults.agent
        if default_agent is None and config.agents:
            default_agent = next(iter(config.agents))
        return cls(
            build_adapter_registry(config),
            SessionPersistence(engine.sessions_dir),
            event_bus=event_bus,
            project_id=project_id,
            default_engine=defaults.engine or engine.default_engine,
            default_model=defaults.model or engine.default_model,
            default_agent=default_agent,
            permission_mode=defaults.permission_mode or engine.permission_mode,
            permission_policy=defaults.permission_policy or engine.permission_policy,
        )

    # ── Read-only accessors ───────────────────────────────────

    @property
    def foreground_id(self) -> str | None:
        return self._foreground_id

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def background(self) -> BackgroundStateStore:
        return self._background

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self, project_id: str | None = None) -> list[Session]:
        """Sessions of a project, most recently active first."""
        project = project_id or self._project_id
        sessions = [s for s in self._sessions.values() if s.project_id == project]
        sessions.sort(key=lambda s: s.last_message_at or s.created_at, reverse=True)
        return sessions

    def timeline(self, session_id: str | None = None) -> list[CanonicalMessage]:
        sid = self._resolve_id(session_id)
        return list(self._state_for(sid, create=True).messages)

    def state(self, session_id: str | None = None) -> SessionState:
        sid = self._resolve_id(session_id)
        return self._state_for(sid, create=True)

    def pending_permission(self, session_id: str | None = None) -> PermissionRequest | None:
        return self._bridge.surfaced(self._resolve_id(session_id))

    def queued_count(self, session_id: str | None = None) -> int:
        return len(self._queues.get(self._resolve_id(session_id), ()))

    # ── Session lifecycle ─────────────────────────────────────

    async def create_session(
        self,
        project_id: str | None = None,
        engine: EngineKind | str | None = None,
        *,
        model: str | None = None,
        agent_id: str | None = None,
        cwd: str = ".",
        permission_mode: str | None = None,
        permission_policy: PermissionPolicy | str | None = None,
        connect: bool = False,
    ) -> Session:
        """Allocate a session on an engine and make it foreground.

        The backend starts lazily on the first send unless ``connect``
        is set.
        """
        kind = EngineKind(engine) if engine else self._default_engine
        self._adapters.get_or_raise(kind)
        session = Session(
            project_id=project_id or self._project_id,
            engine=kind,
            model=model if model is not None else self._model_default(kind),
            agent_id=agent_id or (self._default_agent if kind == EngineKind.ACP else None),
            cwd=cwd,
            permission_mode=permission_mode or self._permission_mode,
            permission_policy=(
                PermissionPolicy.parse(permission_policy)
                if permission_policy is not None
                else self._permission_policy
            ),
        )
        self._sessions[session.id] = session
        self._background.capture(session.id, SessionState(session_id=session.id))
        logger.info(
            "Session created id=%s engine=%s model=%s project=%s",
            session.id[:8], kind.value, session.model, session.project_id,
        )
        self.switch_session(session.id)

        if connect:
            state = self._state_for(session.id, create=True)
            try:
                await self._ensure_live(session, state)
            except AgentDeckError as exc:
                await self._record_failure(session, state, exc)
                raise
            self._sync_session(session, state)
            await self._notify_foreground(session.id)
        return session

    def _model_default(self, kind: EngineKind) -> str | None:
        return self._default_model if kind == self._default_engine else None

    def switch_session(self, session_id: str) -> SessionState:
        """Make a session foreground; no-op if it already is."""
        if session_id == self._foreground_id and self._foreground_state is not None:
            return self._foreground_state
        session = self.get_session(session_id)

        if self._foreground_id is not None and self._foreground_state is not None:
            self._background.capture(self._foreground_id, self._foreground_state)

        state = self._background.restore(session_id)
        if state is None:
            state = self._load_state(session)
            logger.info(
                "Session %s loaded from storage (%d messages, live=%s)",
                session_id[:8], len(state.messages), state.is_connected,
            )

        self._foreground_id = session_id
        self._foreground_state = state
        logger.info("Foreground session -> %s", session_id[:8])
        self.event_bus.emit_nowait(SessionListChanged(session_id=session_id, reason="switched"))
        self.event_bus.emit_nowait(self._foreground_event(session_id, state))
        return state

    async def delete_session(self, session_id: str) -> None:
        session = self.get_session(session_id)
        self._bridge.deny_all(session_id, "Session deleted")
        adapter = self._adapters.get(session.engine)
        if adapter is not None and adapter.is_live(session_id):
            await adapter.stop(session_id)
        self._persistence.delete(session.project_id, session_id)
        self._background.delete(session_id)
        self._queues.pop(session_id, None)
        self._allowed_for_session = {
            key for key in self._allowed_for_session if key[0] != session_id
        }
        del self._sessions[session_id]
        if self._foreground_id == session_id:
            self._foreground_id = None
            self._foreground_state = None
        logger.info("Session %s deleted", session_id[:8])
        await self.event_bus.emit(SessionListChanged(session_id=session_id, reason="deleted"))

    async def stop_session(self, session_id: str | None = None) -> None:
        """Terminate the backend; the session stays as an inert record."""
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        self._bridge.deny_all(sid, "Session stopped")
        adapter = self._adapters.get(session.engine)
        if adapter is not None and adapter.is_live(sid):
            await adapter.stop(sid)
        state = self._state_for(sid)
        if state is not None:
            self._drop_queue(sid, state)
            self._assembler.finalize_streaming(state)
            clear_streaming(state)
            state.is_processing = False
            state.is_connected = False
            state.pending_permission = None
            self._sync_session(session, state)
        self._persist(sid)
        logger.info("Session %s stopped", sid[:8])
        await self._notify_foreground(sid)
        await self.event_bus.emit(SessionListChanged(session_id=sid, reason="stopped"))

    def load_project(self, project_id: str) -> list[Session]:
        """Register every persisted session of a project (inert until used)."""
        self._project_id = project_id
        added = 0
        for session in self._persistence.list_sessions(project_id):
            if session.id not in self._sessions:
                self._sessions[session.id] = session
                added += 1
        logger.info("Project %s loaded: %d persisted session(s)", project_id, added)
        self.event_bus.emit_nowait(SessionListChanged(reason="project_loaded"))
        return self.list_sessions(project_id)

    async def shutdown(self) -> None:
        for sid in list(self._sessions):
            self._bridge.deny_all(sid, "Shutting down")
        for task in list(self._tasks):
            task.cancel()
        await self._adapters.shutdown_all()
        for sid in list(self._sessions):
            state = self._state_for(sid)
            if state is not None:
                state.is_processing = False
                state.is_connected = False
                self._sync_session(self._sessions[sid], state)
            self._persist(sid)
        self.event_bus.close()
        logger.info("Session registry shut down (%d sessions)", len(self._sessions))

    # ── Turns ─────────────────────────────────────────────────

    async def send(
        self,
        text: str,
        images: list[ImageAttachment] | None = None,
        *,
        session_id: str | None = None,
    ) -> CanonicalMessage:
        """Send user input, or queue it while a turn is in flight.

        Engine failures are recorded in the timeline and re-raised.
        """
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        state = self._state_for(sid, create=True)

        if session.title == DEFAULT_TITLE and not any(
            m.role == MessageRole.USER for m in state.messages
        ):
            session.title = derive_title(text)
            self.event_bus.emit_nowait(SessionListChanged(session_id=sid, reason="titled"))

        queue = self._queues.setdefault(sid, deque())
        if state.is_processing or queue or sid in self._flushing:
            msg = user_message(text, images=images, queued=True)
            state.append(msg)
            queue.append(msg.id)
            logger.info(
                "Session %s busy; queued message %s (queue=%d)",
                sid[:8], msg.id, len(queue),
            )
            await self._notify_foreground(sid)
            return msg

        msg = user_message(text, images=images)
        state.append(msg)
        try:
            await self._dispatch(session, state, msg)
        except AgentDeckError as exc:
            await self._record_failure(session, state, exc)
            raise
        return msg

    async def _dispatch(
        self, session: Session, state: SessionState, msg: CanonicalMessage,
    ) -> None:
        self._assembler.begin_turn(state)
        session.last_message_at = msg.timestamp
        self._sync_session(session, state)
        await self._notify_foreground(session.id)

        adapter = await self._ensure_live(session, state)
        await adapter.send(session.id, msg.content, list(msg.images) or None)
        logger.info(
            "Session %s turn dispatched to %s (%d chars)",
            session.id[:8], adapter.name, len(msg.content),
        )

    async def _ensure_live(self, session: Session, state: SessionState) -> EngineAdapter:
        """Start the session's backend if needed, reviving from its handle."""
        adapter = self._adapters.get_or_raise(session.engine)
        if adapter.is_live(session.id):
            return adapter

        config = StartConfig(
            session_id=session.id,
            cwd=session.cwd,
            model=session.model,
            permission_mode=session.permission_mode,
            resume=session.resumption_handle,
            agent_id=session.agent_id,
        )
        try:
            result = await self._start_with_retry(adapter, config)
        except RevivalError as exc:
            logger.warning(
                "Session %s revival failed (%s); starting fresh", session.id[:8], exc,
            )
            state.append(system_message(REVIVAL_NOTICE))
            session.resumption_handle = None
            state.resumption_handle = None
            config.resume = None
            result = await self._start_with_retry(adapter, config)

        self._apply_start_result(session, state, result)
        logger.info(
            "Session %s backend %s on %s (handle=%s)",
            session.id[:8], "revived" if config.resume else "started",
            adapter.name, str(result.resumption_handle)[:12],
        )
        return adapter

    async def _start_with_retry(
        self, adapter: EngineAdapter, config: StartConfig,
    ) -> StartResult:
        try:
            return await adapter.start(config)
        except SpawnError as exc:
            logger.warning(
                "Session %s spawn failed, retrying once: %s",
                config.session_id[:8], exc,
            )
        return await adapter.start(config)

    def _apply_start_result(
        self, session: Session, state: SessionState, result: StartResult,
    ) -> None:
        session.has_backend = True
        state.is_connected = True
        if result.resumption_handle:
            state.resumption_handle = result.resumption_handle
        if result.model:
            session.model = result.model
        self._sync_session(session, state)

    async def _record_failure(
        self, session: Session, state: SessionState, exc: AgentDeckError,
    ) -> None:
        logger.error("Session %s send failed: %s", session.id[:8], exc)
        if isinstance(exc, AuthError):
            event = AuthRequired(
                session_id=session.id, engine=exc.engine, message=str(exc),
            )
            self._assembler.apply(state, event)
            await self.event_bus.emit(event)
        else:
            state.append(system_message(str(exc), is_error=True))
        if self._queues.get(session.id):
            # No turn will complete to flush them.
            self._drop_queue(session.id, state)
            state.append(system_message(QUEUED_SEND_FAILED, is_error=True))
        state.is_processing = False
        self._sync_session(session, state)
        await self._notify_foreground(session.id)

    def _schedule_flush(self, session_id: str) -> None:
        if self._queues.get(session_id):
            self._spawn(self._flush_queue(session_id))

    async def _flush_queue(self, session_id: str) -> None:
        """Send the oldest queued entry once the session is idle."""
        session = self._sessions.get(session_id)
        state = self._state_for(session_id)
        queue = self._queues.get(session_id)
        if (
            session is None or state is None or not queue
            or state.is_processing or session_id in self._flushing
        ):
            return
        self._flushing.add(session_id)
        try:
            queued = state.find(queue.popleft())
            if queued is None:
                self._schedule_flush(session_id)
                return
            # The queued placeholder is replaced by a regular entry at the end.
            state.remove(queued.id)
            msg = user_message(queued.content, images=queued.images)
            state.append(msg)
            try:
                await self._dispatch(session, state, msg)
            except AgentDeckError as exc:
                logger.error(
                    "Session %s queued send failed: %s", session_id[:8], exc,
                )
                self._drop_queue(session_id, state)
                state.append(system_message(QUEUED_SEND_FAILED, is_error=True))
                state.is_processing = False
                self._sync_session(session, state)
                await self._notify_foreground(session_id)
        finally:
            self._flushing.discard(session_id)

    def _drop_queue(self, session_id: str, state: SessionState) -> None:
        for message_id in self._queues.pop(session_id, ()):
            state.remove(message_id)

    def interrupt(self, session_id: str | None = None) -> int:
        """Deny pending approvals now; signal the backend in the background.

        Returns the number of approvals denied.
        """
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        denied = self._bridge.deny_all(sid)
        state = self._state_for(sid)
        if state is not None:
            state.pending_permission = None
        adapter = self._adapters.get(session.engine)
        if adapter is not None and adapter.is_live(sid):
            self._spawn(adapter.interrupt(sid))
        elif state is not None:
            if self._queues.get(sid):
                logger.info("Session %s not live; discarding queued messages", sid[:8])
                self._drop_queue(sid, state)
            state.is_processing = False
            self._sync_session(session, state)
        logger.info("Session %s interrupted (%d approval(s) denied)", sid[:8], denied)
        if state is not None and sid == self._foreground_id:
            self.event_bus.emit_nowait(self._foreground_event(sid, state))
        return denied

    async def revert_files(self, message_id: str, *, session_id: str | None = None) -> bool:
        """Undo file edits made since the given user message was sent."""
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        state = self._state_for(sid, create=True)
        msg = state.find(message_id)
        if msg is None or msg.checkpoint_id is None:
            logger.warning("Session %s: no checkpoint on message %s", sid[:8], message_id)
            return False
        adapter = self._adapters.get(session.engine)
        if adapter is None or not adapter.is_live(sid):
            state.append(system_message("Start the session again to revert files.", is_error=True))
            await self._notify_foreground(sid)
            return False

        reverted = await adapter.revert_files(sid, msg.checkpoint_id)
        if reverted:
            state.append(system_message(f"Reverted files to before: {msg.content[:60]}"))
            self._persist(sid)
        await self._notify_foreground(sid)
        return reverted

    # ── Settings ──────────────────────────────────────────────

    async def set_model(self, model: str, *, session_id: str | None = None) -> None:
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        session.model = model
        adapter = self._adapters.get(session.engine)
        if adapter is not None and adapter.is_live(sid):
            await adapter.set_model(sid, model)
        logger.info("Session %s model -> %s", sid[:8], model)
        self._persist(sid)
        await self.event_bus.emit(SessionListChanged(session_id=sid, reason="model"))

    async def set_mode(self, mode: str, *, session_id: str | None = None) -> None:
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        session.permission_mode = mode
        adapter = self._adapters.get(session.engine)
        if adapter is not None and adapter.is_live(sid):
            await adapter.set_mode(sid, mode)
        logger.info("Session %s permission mode -> %s", sid[:8], mode)
        self._persist(sid)

    def set_permission_policy(
        self, policy: PermissionPolicy | str, *, session_id: str | None = None,
    ) -> None:
        session = self.get_session(self._resolve_id(session_id))
        session.permission_policy = PermissionPolicy.parse(policy)

    async def set_engine(
        self, engine: EngineKind | str, *, session_id: str | None = None,
    ) -> Session:
        """Change engine; a session that already had a backend is forked."""
        sid = self._resolve_id(session_id)
        session = self.get_session(sid)
        kind = EngineKind(engine)
        if kind == session.engine:
            return session
        self._adapters.get_or_raise(kind)
        state = self._state_for(sid, create=True)
        if session.has_backend or state.messages:
            logger.info(
                "Session %s is bound to %s; creating a new %s session",
                sid[:8], session.engine.value, kind.value,
            )
            return await self.create_session(
                session.project_id, kind,
                cwd=session.cwd,
                permission_mode=session.permission_mode,
                permission_policy=session.permission_policy,
            )
        session.engine = kind
        session.model = self._model_default(kind)
        session.agent_id = self._default_agent if kind == EngineKind.ACP else None
        await self.event_bus.emit(SessionListChanged(session_id=sid, reason="engine"))
        return session

    # ── Permissions ───────────────────────────────────────────

    def respond_permission(
        self,
        request_id: str,
        option_id: str,
        *,
        message: str | None = None,
        updated_input: dict[str, Any] | None = None,
    ) -> bool:
        """Answer a surfaced request with an option id (or allow/allow_always/deny)."""
        request = self._bridge.get(request_id)
        if request is None:
            logger.warning("No pending permission %s", request_id[:8])
            return False
        decision = decision_for_option(
            request, option_id, message=message, updated_input=updated_input,
        )
        return self._bridge.resolve(request_id, decision, DecisionOrigin.USER)

    async def _on_permission_request(self, request: PermissionRequest) -> PermissionDecision:
        sid = request.session_id
        session = self._sessions.get(sid)
        if session is None:
            return PermissionDecision.deny("Unknown session", origin=DecisionOrigin.FORCED)

        if (sid, request.tool_name) in self._allowed_for_session:
            option = (
                request.find_option(OptionKind.ALLOW_ALWAYS)
                or request.find_option(OptionKind.ALLOW_ONCE)
            )
            logger.info(
                "Session %s: %s allowed for session", sid[:8], request.tool_name,
            )
            return PermissionDecision(
                behavior="allow",
                option_id=option.option_id if option else None,
                for_session=True,
                origin=DecisionOrigin.SESSION_RULE,
            )

        # The user's reply is the answer to these; a policy cannot give it.
        policy = (
            PermissionPolicy.ASK if request.tool_name in _NEVER_REMEMBERED
            else session.permission_policy
        )
        decision = await self._bridge.request(request, policy)
        if (
            decision.allowed
            and decision.for_session
            and request.tool_name not in _NEVER_REMEMBERED
        ):
            self._allowed_for_session.add((sid, request.tool_name))
        return decision

    def _on_permission_surfaced(self, request: PermissionRequest) -> None:
        state = self._state_for(request.session_id)
        if state is not None:
            state.pending_permission = request
        self.event_bus.emit_nowait(PermissionRequested(
            session_id=request.session_id,
            request_id=request.request_id,
            tool_name=request.tool_name,
            tool_input=request.tool_input,
            options=[
                {"option_id": o.option_id, "kind": o.kind.value, "name": o.name}
                for o in request.options
            ],
        ))

    def _on_permission_resolved(
        self, request: PermissionRequest, decision: PermissionDecision,
    ) -> None:
        state = self._state_for(request.session_id)
        if state is not None and state.pending_permission is request:
            state.pending_permission = None
        self.event_bus.emit_nowait(PermissionResolved(
            session_id=request.session_id,
            request_id=request.request_id,
            behavior=decision.behavior,
            origin=decision.origin.value,
        ))

    # ── Engine events ─────────────────────────────────────────

    async def _on_engine_event(self, data: dict[str, Any]) -> None:
        event = dict_to_event(data)
        sid = event.session_id
        session = self._sessions.get(sid)
        if session is None:
            logger.debug("Dropping %s for unknown session %s", event.event_type, sid[:8])
            return
        state = self._state_for(sid, create=True)

        if event.event_type == "process_exited":
            self._bridge.deny_all(sid, "Agent process exited")
            self._drop_queue(sid, state)

        changed = self._assembler.apply(state, event)
        if isinstance(event, HandleUpdated) and event.model:
            session.model = event.model
        self._sync_session(session, state)

        if event.event_type == "turn_completed":
            session.last_message_at = _utcnow()
            self._persist(sid)
            self._schedule_flush(sid)
        elif event.event_type == "process_exited":
            logger.warning(
                "Session %s backend exited (code=%s)", sid[:8], data.get("code"),
            )
            self._background.mark_disconnected(sid)
            self._sync_session(session, state)
            self._persist(sid)
            await self.event_bus.emit(SessionListChanged(session_id=sid, reason="exited"))
        elif event.event_type == "auth_required":
            await self.event_bus.emit(event)

        if changed:
            await self._notify_foreground(sid)

    # ── Internals ─────────────────────────────────────────────

    def _resolve_id(self, session_id: str | None) -> str:
        sid = session_id or self._foreground_id
        if sid is None:
            raise SessionNotFoundError("<no foreground session>")
        return sid

    def _state_for(self, session_id: str, *, create: bool = False) -> SessionState | None:
        if session_id == self._foreground_id and self._foreground_state is not None:
            return self._foreground_state
        state = self._background.get(session_id)
        if state is None and create:
            state = self._load_state(self.get_session(session_id))
            self._background.capture(session_id, state)
        return state

    def _load_state(self, session: Session) -> SessionState:
        """Rebuild live state from the persisted record (inert unless live)."""
        state = SessionState(
            session_id=session.id,
            total_cost=session.total_cost,
            resumption_handle=session.resumption_handle,
        )
        if self._persistence.exists(session.project_id, session.id):
            record = self._persistence.load(session.project_id, session.id)
            state.messages = record.messages
            rebuild_cursor(state)
        adapter = self._adapters.get(session.engine)
        state.is_connected = adapter is not None and adapter.is_live(session.id)
        session.is_connected = state.is_connected
        return state

    @staticmethod
    def _sync_session(session: Session, state: SessionState) -> None:
        session.is_processing = state.is_processing
        session.is_connected = state.is_connected
        session.total_cost = state.total_cost
        if state.resumption_handle:
            session.resumption_handle = state.resumption_handle

    def _persist(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        state = self._state_for(session_id)
        if session is None or state is None:
            return
        messages = [m for m in state.messages if not m.is_queued]
        if not messages and not self._persistence.exists(session.project_id, session_id):
            return
        try:
            self._persistence.save(session, messages)
        except OSError as exc:
            logger.error("Failed to persist session %s: %s", session_id[:8], exc)

    def _foreground_event(self, session_id: str, state: SessionState) -> DeckEvent:
        return ForegroundTimelineChanged(
            session_id=session_id,
            message_count=len(state.messages),
            is_processing=state.is_processing,
        )

    async def _notify_foreground(self, session_id: str) -> None:
        if session_id != self._foreground_id or self._foreground_state is None:
            return
        await self.event_bus.emit(self._foreground_event(session_id, self._foreground_state))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed: %s", task.exception())
