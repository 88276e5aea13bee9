"""YAML configuration loader.

Loads a single YAML file describing engine backends, ACP agent
definitions and session defaults. When no YAML is provided, env vars
(see config.py) and built-in defaults apply.

Example YAML:
    engine:
      data_dir: ~/.agentdeck
      rpc_timeout_seconds: 30

    engines:
      claude:
        type: claude
        command: /usr/local/bin/claude   # optional CLI override
        model: claude-sonnet-4-5
      codex:
        type: codex
        command: codex
        api_key_env: OPENAI_API_KEY
      acp:
        type: acp

    agents:
      gemini:
        name: Gemini CLI
        command: gemini
        args: ["--experimental-acp"]
        env:
          GEMINI_API_KEY: "${GEMINI_API_KEY}"

    defaults:
      engine: claude
      model: claude-sonnet-4-5
      permission_mode: default
      permission_policy: ask
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class EngineSettings:
    """Configuration for a single engine backend."""
    type: str  # "claude", "acp" or "codex"
    command: str | None = None
    api_key_env: str | None = None
    model: str | None = None


@dataclass
class AcpAgentConfig:
    """An ACP agent binary the ACP engine can launch."""
    id: str
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class DefaultsConfig:
    """Defaults applied to newly created sessions."""
    engine: str | None = None
    model: str | None = None
    agent: str | None = None
    permission_mode: str | None = None
    permission_policy: str | None = None


@dataclass
class DeckConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    engines: dict[str, EngineSettings]
    agents: dict[str, AcpAgentConfig]
    defaults: DefaultsConfig


def _expand_env(value: str) -> str:
    """Replace ${VAR} references with environment values (empty if unset)."""
    return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)


def find_config_path(cwd: str | Path) -> Path | None:
    """Auto-discover .agentdeck/agentdeck.yaml, then agentdeck.yaml."""
    base = Path(cwd)
    for candidate in (
        base / ".agentdeck" / "agentdeck.yaml",
        base / "agentdeck.yaml",
    ):
        if candidate.exists():
            logger.info("Auto-discovered config: %s", candidate)
            return candidate
    logger.debug("No config file found under %s; using defaults", base)
    return None


def default_config() -> DeckConfig:
    """Configuration used when no YAML file exists."""
    engine = EngineConfig.from_env()
    engines = {
        "claude": EngineSettings(
            type="claude", command=engine.claude_cli_path,
        ),
        "codex": EngineSettings(type="codex", command=engine.codex_command),
        "acp": EngineSettings(type="acp"),
    }
    return DeckConfig(
        engine=engine,
        engines=engines,
        agents={},
        defaults=DefaultsConfig(),
    )


def load_yaml_config(path: str | Path) -> DeckConfig:
    """Load and parse a YAML config file.

    Environment variables seed the engine section; values present in
    the YAML file win over them.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s", path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s: sections %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    # ── Engine config ──────────────────────────────────────────
    base = EngineConfig.from_env()
    engine_raw = raw.get("engine", {}) or {}
    engine = EngineConfig(
        data_dir=str(Path(
            _expand_env(str(engine_raw.get("data_dir", base.data_dir)))
        ).expanduser()),
        default_engine=engine_raw.get("default_engine", base.default_engine),
        default_model=engine_raw.get("default_model", base.default_model),
        permission_policy=engine_raw.get(
            "permission_policy", base.permission_policy
        ),
        permission_mode=engine_raw.get(
            "permission_mode", base.permission_mode
        ),
        rpc_timeout_seconds=float(engine_raw.get(
            "rpc_timeout_seconds", base.rpc_timeout_seconds
        )),
        claude_cli_path=engine_raw.get(
            "claude_cli_path", base.claude_cli_path
        ),
        codex_command=engine_raw.get("codex_command", base.codex_command),
        log_level=engine_raw.get("log_level", base.log_level),
    )

    # ── Engines ────────────────────────────────────────────────
    engines_raw = raw.get("engines", {}) or {}
    engines: dict[str, EngineSettings] = {}
    for name, cfg in engines_raw.items():
        cfg = cfg or {}
        engines[name] = EngineSettings(
            type=cfg.get("type", name),
            command=cfg.get("command"),
            api_key_env=cfg.get("api_key_env"),
            model=cfg.get("model"),
        )
    if not engines:
        engines = default_config().engines

    # ── ACP agents ─────────────────────────────────────────────
    agents_raw = raw.get("agents", {}) or {}
    agents: dict[str, AcpAgentConfig] = {}
    for agent_id, cfg in agents_raw.items():
        if not isinstance(cfg, dict) or not cfg.get("command"):
            logger.warning(
                "ACP agent '%s' has no command configured, skipping", agent_id
            )
            continue
        agents[agent_id] = AcpAgentConfig(
            id=agent_id,
            name=cfg.get("name", agent_id),
            command=_expand_env(str(cfg["command"])),
            args=[_expand_env(str(a)) for a in cfg.get("args", []) or []],
            env={
                str(k): _expand_env(str(v))
                for k, v in (cfg.get("env", {}) or {}).items()
            },
        )

    # ── Defaults ───────────────────────────────────────────────
    defaults_raw = raw.get("defaults", {}) or {}
    defaults = DefaultsConfig(
        engine=defaults_raw.get("engine"),
        model=defaults_raw.get("model"),
        agent=defaults_raw.get("agent"),
        permission_mode=defaults_raw.get("permission_mode"),
        permission_policy=defaults_raw.get("permission_policy"),
    )
    if defaults.agent and defaults.agent not in agents:
        logger.warning(
            "defaults.agent '%s' is not defined under agents", defaults.agent
        )

    logger.info(
        "Config loaded: engines=%s agents=%s default_engine=%s",
        ", ".join(engines) or "none",
        ", ".join(agents) or "none",
        defaults.engine or engine.default_engine,
    )
    return DeckConfig(
        engine=engine, engines=engines, agents=agents, defaults=defaults,
    )
