"""Exception hierarchy for the session orchestration core.

Adapters convert backend failures into these types at the process
boundary; the session registry turns them into timeline entries.
There is deliberately no permission-timeout error: a pending approval
stays pending until the user answers or an interrupt denies it.
"""
from __future__ import annotations

from typing import Any


class AgentDeckError(Exception):
    """Base exception for all agentdeck errors."""


class EngineError(AgentDeckError):
    """A failure attributable to one engine backend."""
    def __init__(self, engine: str, message: str):
        self.engine = engine
        super().__init__(message)


class SpawnError(EngineError):
    """Backend process or connection could not be established."""
    def __init__(self, engine: str, reason: str):
        self.reason = reason
        super().__init__(engine, f"Failed to start {engine} backend: {reason}")


class AuthError(EngineError):
    """Backend requires credentials it does not have."""
    def __init__(self, engine: str, reason: str = "authentication required"):
        self.reason = reason
        super().__init__(engine, f"{engine} backend requires login: {reason}")


class ProtocolViolation(EngineError):
    """Backend emitted something the adapter cannot map."""
    def __init__(self, engine: str, detail: str, payload: Any = None):
        self.detail = detail
        self.payload = payload
        super().__init__(engine, f"Unmapped {engine} event: {detail}")


class RevivalError(EngineError):
    """Backend cannot resume the conversation behind a resumption handle."""
    def __init__(self, engine: str, handle: str | None, reason: str):
        self.handle = handle
        self.reason = reason
        super().__init__(
            engine, f"Cannot resume {engine} conversation {handle}: {reason}"
        )


class TurnBusyError(EngineError):
    """Backend refuses a new turn while one is still running."""
    def __init__(self, engine: str, session_id: str):
        self.session_id = session_id
        super().__init__(
            engine, f"Session {session_id[:8]} already has a turn in progress"
        )


class SessionNotLiveError(EngineError):
    """Operation needs a live backend but the session has none."""
    def __init__(self, engine: str, session_id: str):
        self.session_id = session_id
        super().__init__(
            engine, f"Session {session_id[:8]} has no live {engine} backend"
        )


class SessionNotFoundError(AgentDeckError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class AdapterNotAvailableError(AgentDeckError):
    """Requested engine has no registered adapter."""
    def __init__(self, engine: str, available: list[str]):
        self.engine_name = engine
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Engine '{engine}' is not available. "
            f"Available engines: {avail_str}"
        )


class RpcError(AgentDeckError):
    """Error object returned by a JSON-RPC peer."""
    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.rpc_message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


class RpcTimeoutError(AgentDeckError):
    def __init__(self, method: str, timeout_seconds: float):
        self.method = method
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"RPC request '{method}' timed out after {timeout_seconds}s"
        )


class ConnectionClosedError(AgentDeckError):
    def __init__(self, reason: str = "connection closed"):
        self.reason = reason
        super().__init__(reason)
