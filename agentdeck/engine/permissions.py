"""Permission bridge: tool-approval requests as explicit futures.

Every request the adapters raise becomes one record keyed by request id
with a ``PENDING -> RESOLVED`` state and an asyncio future. A record is
resolved exactly once, from exactly one of three call sites: the
auto-response policy, the user (``resolve``), or a forced denial
(``deny_all`` on interrupt or stop). Later attempts are no-ops.

Per session at most one request is surfaced to the presentation layer
at a time; others wait in FIFO order and surface as the current one
resolves.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from agentdeck.engine.adapters.tool_mapping import pick_auto_option
from agentdeck.shared.models.permission import (
    DecisionOrigin,
    OptionKind,
    PermissionDecision,
    PermissionPolicy,
    PermissionRequest,
)

logger = logging.getLogger(__name__)

SurfaceHook = Callable[[PermissionRequest], None]
ResolvedHook = Callable[[PermissionRequest, PermissionDecision], None]


class RequestState(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass
class PendingPermission:
    request: PermissionRequest
    future: asyncio.Future[PermissionDecision]
    state: RequestState = RequestState.PENDING
    surfaced: bool = False


def decision_for_option(
    request: PermissionRequest,
    option_id: str,
    *,
    message: str | None = None,
    updated_input: dict | None = None,
) -> PermissionDecision:
    """Build a decision from a chosen option id.

    Also accepts the generic choices ``allow``, ``allow_always`` and
    ``deny`` for requests whose backend offered no matching option id.
    """
    option = request.option_by_id(option_id)
    if option is None:
        kind = {
            "allow": OptionKind.ALLOW_ONCE,
            "allow_once": OptionKind.ALLOW_ONCE,
            "allow_always": OptionKind.ALLOW_ALWAYS,
            "deny": OptionKind.REJECT_ONCE,
            "reject_once": OptionKind.REJECT_ONCE,
            "reject_always": OptionKind.REJECT_ALWAYS,
        }.get(option_id)
        if kind is None:
            raise ValueError(f"Unknown permission option: {option_id}")
        option = request.find_option(kind)
        if option is None and kind == OptionKind.ALLOW_ALWAYS:
            option = request.find_option(OptionKind.ALLOW_ONCE)
        if option is None:
            allowed = kind in (OptionKind.ALLOW_ONCE, OptionKind.ALLOW_ALWAYS)
            return PermissionDecision(
                behavior="allow" if allowed else "deny",
                message=message,
                for_session=kind == OptionKind.ALLOW_ALWAYS,
                updated_input=updated_input,
            )
    if not option.allows:
        return PermissionDecision.deny(
            message or "Denied by user", option_id=option.option_id,
        )
    return PermissionDecision(
        behavior="allow",
        option_id=option.option_id,
        message=message,
        for_session=option.kind == OptionKind.ALLOW_ALWAYS,
        updated_input=updated_input,
    )


class PermissionBridge:
    """Turns adapter approval callbacks into resolvable records."""

    def __init__(
        self,
        on_surface: SurfaceHook | None = None,
        on_resolved: ResolvedHook | None = None,
    ) -> None:
        self._records: dict[str, PendingPermission] = {}
        self._queues: dict[str, deque[str]] = {}
        self._on_surface = on_surface
        self._on_resolved = on_resolved

    async def request(
        self,
        request: PermissionRequest,
        policy: PermissionPolicy = PermissionPolicy.ASK,
    ) -> PermissionDecision:
        """Resolve by policy, or surface to the user and wait."""
        loop = asyncio.get_running_loop()
        record = PendingPermission(request=request, future=loop.create_future())
        self._records[request.request_id] = record

        option = pick_auto_option(request.options, policy)
        if option is not None:
            self.resolve(
                request.request_id,
                PermissionDecision(
                    behavior="allow",
                    option_id=option.option_id,
                    for_session=option.kind == OptionKind.ALLOW_ALWAYS,
                ),
                DecisionOrigin.POLICY,
            )
            return record.future.result()

        queue = self._queues.setdefault(request.session_id, deque())
        queue.append(request.request_id)
        logger.info(
            "Permission request queued session=%s request_id=%s tool=%s (position %d)",
            request.session_id[:8], request.request_id[:8],
            request.tool_name, len(queue),
        )
        if len(queue) == 1:
            self._surface(record)
        try:
            return await asyncio.shield(record.future)
        except asyncio.CancelledError:
            # The adapter gave up waiting (session stopped); drop the record.
            if record.state == RequestState.PENDING:
                self._finish(
                    record,
                    PermissionDecision.deny("Cancelled", origin=DecisionOrigin.FORCED),
                )
            raise

    def resolve(
        self,
        request_id: str,
        decision: PermissionDecision,
        origin: DecisionOrigin = DecisionOrigin.USER,
    ) -> bool:
        """Resolve a pending request. Returns False if it was already resolved."""
        record = self._records.get(request_id)
        if record is None or record.state == RequestState.RESOLVED:
            logger.warning(
                "Permission resolve ignored request_id=%s (missing or already resolved)",
                request_id[:8],
            )
            return False
        decision.origin = origin
        self._finish(record, decision)
        logger.info(
            "Permission resolved request_id=%s behavior=%s origin=%s",
            request_id[:8], decision.behavior, origin.value,
        )
        return True

    def deny_all(self, session_id: str, message: str = "Interrupted by user") -> int:
        """Force-deny every surfaced and waiting request of a session."""
        queue = self._queues.pop(session_id, deque())
        denied = 0
        for request_id in queue:
            record = self._records.get(request_id)
            if record is None or record.state == RequestState.RESOLVED:
                continue
            self._finish(
                record,
                PermissionDecision.deny(message, origin=DecisionOrigin.FORCED),
                surface_next=False,
            )
            denied += 1
        if denied:
            logger.info(
                "Force-denied %d permission request(s) for session %s",
                denied, session_id[:8],
            )
        return denied

    def get(self, request_id: str) -> PermissionRequest | None:
        record = self._records.get(request_id)
        if record is None or record.state == RequestState.RESOLVED:
            return None
        return record.request

    def surfaced(self, session_id: str) -> PermissionRequest | None:
        """The request currently shown for a session, if any."""
        queue = self._queues.get(session_id)
        if not queue:
            return None
        record = self._records.get(queue[0])
        return record.request if record and record.surfaced else None

    def pending_count(self, session_id: str) -> int:
        return len(self._queues.get(session_id, ()))

    # ── Internals ─────────────────────────────────────────────

    def _surface(self, record: PendingPermission) -> None:
        record.surfaced = True
        if self._on_surface is not None:
            try:
                self._on_surface(record.request)
            except Exception:
                logger.exception("Permission surface hook failed")

    def _finish(
        self,
        record: PendingPermission,
        decision: PermissionDecision,
        *,
        surface_next: bool = True,
    ) -> None:
        record.state = RequestState.RESOLVED
        request = record.request
        self._records.pop(request.request_id, None)
        if not record.future.done():
            record.future.set_result(decision)

        queue = self._queues.get(request.session_id)
        was_head = bool(queue) and queue[0] == request.request_id
        if queue and request.request_id in queue:
            queue.remove(request.request_id)
        if queue is not None and not queue:
            self._queues.pop(request.session_id, None)

        if record.surfaced and self._on_resolved is not None:
            try:
                self._on_resolved(request, decision)
            except Exception:
                logger.exception("Permission resolved hook failed")

        if surface_next and was_head and queue:
            following = self._records.get(queue[0])
            if following is not None and not following.surfaced:
                self._surface(following)
