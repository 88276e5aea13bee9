"""agentdeck engine: multi-engine session orchestration core."""
from .config import EngineConfig
from .errors import (
    AdapterNotAvailableError,
    AgentDeckError,
    AuthError,
    ConnectionClosedError,
    EngineError,
    ProtocolViolation,
    RevivalError,
    RpcError,
    RpcTimeoutError,
    SessionNotFoundError,
    SessionNotLiveError,
    SpawnError,
    TurnBusyError,
)
from .assembler import StreamingAssembler
from .background import BackgroundStateStore
from .permissions import PermissionBridge
from .session_registry import SessionRegistry

__all__ = [
    "EngineConfig",
    "StreamingAssembler",
    "BackgroundStateStore",
    "PermissionBridge",
    "SessionRegistry",
    # Errors
    "AgentDeckError",
    "EngineError",
    "SpawnError",
    "AuthError",
    "ProtocolViolation",
    "RevivalError",
    "TurnBusyError",
    "SessionNotLiveError",
    "SessionNotFoundError",
    "AdapterNotAvailableError",
    "RpcError",
    "RpcTimeoutError",
    "ConnectionClosedError",
]
