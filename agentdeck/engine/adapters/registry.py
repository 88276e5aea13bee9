"""Adapter registry: maps engine kinds to EngineAdapter instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from agentdeck.engine.errors import AdapterNotAvailableError
from agentdeck.shared.models.session import EngineKind

from .base import EngineAdapter

if TYPE_CHECKING:
    from ..yaml_config import DeckConfig

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """One adapter per engine kind; the Session Registry dispatches on
    the session's stored engine tag through this table only.
    """

    def __init__(self) -> None:
        self._adapters: dict[EngineKind, EngineAdapter] = {}

    def register(self, adapter: EngineAdapter) -> None:
        if adapter.kind in self._adapters:
            logger.warning("Replacing adapter for engine %s", adapter.name)
        self._adapters[adapter.kind] = adapter
        logger.info(
            "Adapter registered: %s (available=%s)",
            adapter.name, adapter.is_available(),
        )

    def get(self, kind: EngineKind) -> EngineAdapter | None:
        return self._adapters.get(kind)

    def get_or_raise(self, kind: EngineKind) -> EngineAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise AdapterNotAvailableError(kind.value, self.list_names())
        return adapter

    def list_names(self) -> list[str]:
        return [kind.value for kind in self._adapters]

    def list_available(self) -> list[str]:
        """Names of engines whose runtime is installed."""
        return [
            kind.value for kind, adapter in self._adapters.items()
            if adapter.is_available()
        ]

    def all(self) -> list[EngineAdapter]:
        return list(self._adapters.values())

    def validate(self) -> dict[str, bool]:
        """Log availability of every registered engine and return it."""
        report = {
            kind.value: adapter.is_available()
            for kind, adapter in self._adapters.items()
        }
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]
        if available:
            logger.info("Available engines: %s", ", ".join(available))
        if unavailable:
            logger.warning(
                "Unavailable engines (runtime not installed): %s",
                ", ".join(unavailable),
            )
        if not available:
            logger.error("No engines are available! Sessions cannot start.")
        return report

    async def shutdown_all(self) -> None:
        for kind, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as exc:
                logger.error("Error shutting down engine '%s': %s", kind.value, exc)

    @property
    def count(self) -> int:
        return len(self._adapters)


def build_adapter_registry(config: DeckConfig) -> AdapterRegistry:
    """Build an AdapterRegistry from the parsed configuration.

    Every engine entry names its type; an entry with an unknown type is
    skipped with a warning. The ACP adapter receives all agent
    definitions from the ``agents`` section.
    """
    from .acp_adapter import AcpAdapter
    from .claude_adapter import ClaudeAdapter
    from .codex_adapter import CodexAdapter

    registry = AdapterRegistry()
    timeout = config.engine.rpc_timeout_seconds

    for name, settings in config.engines.items():
        if settings.type == EngineKind.CLAUDE.value:
            registry.register(ClaudeAdapter(
                cli_path=settings.command or config.engine.claude_cli_path,
            ))
        elif settings.type == EngineKind.CODEX.value:
            registry.register(CodexAdapter(
                command=settings.command or config.engine.codex_command,
                api_key_env=settings.api_key_env,
                rpc_timeout=timeout,
            ))
        elif settings.type == EngineKind.ACP.value:
            registry.register(AcpAdapter(config.agents, rpc_timeout=timeout))
        else:
            logger.warning(
                "Unknown engine type '%s' for '%s', skipping",
                settings.type, name,
            )

    if config.agents and registry.get(EngineKind.ACP) is None:
        registry.register(AcpAdapter(config.agents, rpc_timeout=timeout))

    registry.validate()
    return registry
