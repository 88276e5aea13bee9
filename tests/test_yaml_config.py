from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
import yaml

from agentdeck.engine.config import EngineConfig
from agentdeck.engine.yaml_config import find_config_path, load_yaml_config


def _write(tmpdir: str, data: dict, name: str = "agentdeck.yaml") -> Path:
    path = Path(tmpdir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_load_yaml_config_parses_engines_agents_and_defaults(monkeypatch) -> None:
    monkeypatch.setenv("GEMINI_TEST_KEY", "secret-value")
    with TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, {
            "engine": {"data_dir": tmpdir, "rpc_timeout_seconds": 12},
            "engines": {
                "claude": {"type": "claude"},
                "codex": {"type": "codex", "command": "/opt/codex", "api_key_env": "OPENAI_API_KEY"},
            },
            "agents": {
                "gemini": {
                    "name": "Gemini CLI",
                    "command": "gemini",
                    "args": ["--experimental-acp"],
                    "env": {"GEMINI_API_KEY": "${GEMINI_TEST_KEY}"},
                },
                "broken": {"name": "No command"},
            },
            "defaults": {"engine": "acp", "agent": "gemini", "permission_policy": "allow_everything"},
        })

        config = load_yaml_config(path)

        assert config.engine.rpc_timeout_seconds == 12.0
        assert config.engine.data_dir == tmpdir
        assert set(config.engines) == {"claude", "codex"}
        assert config.engines["codex"].command == "/opt/codex"
        assert list(config.agents) == ["gemini"]
        assert config.agents["gemini"].env == {"GEMINI_API_KEY": "secret-value"}
        assert config.agents["gemini"].args == ["--experimental-acp"]
        assert config.defaults.engine == "acp"
        assert config.defaults.permission_policy == "allow_everything"


def test_empty_engines_section_falls_back_to_all_three_engines() -> None:
    with TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, {"defaults": {"engine": "claude"}})

        config = load_yaml_config(path)

        assert {s.type for s in config.engines.values()} == {"claude", "codex", "acp"}


def test_missing_config_file_raises() -> None:
    with TemporaryDirectory() as tmpdir:
        with pytest.raises(FileNotFoundError):
            load_yaml_config(Path(tmpdir) / "nope.yaml")


def test_find_config_path_prefers_dot_directory() -> None:
    with TemporaryDirectory() as tmpdir:
        assert find_config_path(tmpdir) is None
        _write(tmpdir, {}, name="agentdeck.yaml")
        nested = _write(tmpdir, {}, name=".agentdeck/agentdeck.yaml")

        assert find_config_path(tmpdir) == nested


def test_engine_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("AGENTDECK_DATA_DIR", "/tmp/agentdeck-test")
    monkeypatch.setenv("AGENTDECK_RPC_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("AGENTDECK_PERMISSION_POLICY", "auto_accept_once")

    config = EngineConfig.from_env()

    assert config.data_dir == "/tmp/agentdeck-test"
    assert config.rpc_timeout_seconds == 5.0
    assert config.permission_policy == "auto_accept_once"
    assert config.sessions_dir == Path("/tmp/agentdeck-test") / "sessions"
