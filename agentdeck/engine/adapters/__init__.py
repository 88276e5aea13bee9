"""Engine adapters: one per backend protocol family."""
from .base import EngineAdapter, StartConfig, StartResult
from .registry import AdapterRegistry, build_adapter_registry
from .claude_adapter import ClaudeAdapter
from .acp_adapter import AcpAdapter
from .codex_adapter import CodexAdapter

__all__ = [
    "EngineAdapter",
    "StartConfig",
    "StartResult",
    "AdapterRegistry",
    "build_adapter_registry",
    "ClaudeAdapter",
    "AcpAdapter",
    "CodexAdapter",
]
