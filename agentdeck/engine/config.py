"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTDECK_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentdeck.shared.models.permission import (
        PermissionDecision,
        PermissionRequest,
    )

logger = logging.getLogger(__name__)


# Async callback through which adapters report canonical engine events.
# Signature: async def callback(event: dict[str, Any]) -> None
# Every event dict carries "event" (type) and "session_id".
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Async callback through which adapters ask for a tool approval.
# Resolves once with the decision; never times out.
PermissionCallback = Callable[
    ["PermissionRequest"], Awaitable["PermissionDecision"]
]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception(
            "Event callback failed for %s (session=%s)",
            event.get("event"),
            str(event.get("session_id", ""))[:8],
        )


def _default_data_dir() -> str:
    return str(Path.home() / ".agentdeck")


@dataclass
class EngineConfig:
    """Core orchestration configuration."""

    data_dir: str = field(default_factory=_default_data_dir)
    default_engine: str = "claude"
    default_model: str | None = None
    # ask | auto_accept_once | allow_everything
    permission_policy: str = "ask"
    # Backend permission mode: default | acceptEdits | bypassPermissions | plan
    permission_mode: str = "default"
    rpc_timeout_seconds: float = 30.0
    claude_cli_path: str | None = None
    codex_command: str = "codex"
    log_level: str = "INFO"

    @property
    def sessions_dir(self) -> Path:
        return Path(self.data_dir) / "sessions"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTDECK_* environment variables."""
        deck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTDECK_")
        }
        if deck_vars:
            logger.info(
                "EngineConfig.from_env: AGENTDECK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(deck_vars.items())),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no AGENTDECK_* env vars set, using defaults"
            )

        config = cls(
            data_dir=os.getenv("AGENTDECK_DATA_DIR") or _default_data_dir(),
            default_engine=os.getenv(
                "AGENTDECK_DEFAULT_ENGINE", cls.default_engine
            ),
            default_model=os.getenv("AGENTDECK_DEFAULT_MODEL") or None,
            permission_policy=os.getenv(
                "AGENTDECK_PERMISSION_POLICY", cls.permission_policy
            ),
            permission_mode=os.getenv(
                "AGENTDECK_PERMISSION_MODE", cls.permission_mode
            ),
            rpc_timeout_seconds=float(os.getenv(
                "AGENTDECK_RPC_TIMEOUT_SECONDS", str(cls.rpc_timeout_seconds)
            )),
            claude_cli_path=os.getenv("AGENTDECK_CLAUDE_CLI_PATH") or None,
            codex_command=os.getenv(
                "AGENTDECK_CODEX_COMMAND", cls.codex_command
            ),
            log_level=os.getenv("AGENTDECK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: engine=%s model=%s policy=%s data_dir=%s",
            config.default_engine, config.default_model,
            config.permission_policy, config.data_dir,
        )
        return config
