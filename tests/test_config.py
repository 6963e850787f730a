"""Tests for config loading: defaults, partial merge, env overrides."""

import json

import pytest

from storyloom.config import ServerConfig, load_config, save_config
from storyloom.errors import ConfigError
from storyloom.schedule import IntervalSchedule


def test_defaults_without_file(tmp_path):
    """Returns defaults when no config file exists."""
    config = load_config(tmp_path / "missing.json", use_env=False)
    assert config.backend.provider_format == "openai"
    assert config.circuit_breaker.max_consecutive_failures == 5
    assert config.persistence.failure_threshold == 3
    assert config.tasks == []
    assert config.security is None


def test_partial_section_merge(tmp_path):
    """A partial nested section keeps the other defaults."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "backend": {"provider_url": "http://llm:8080"},
        "scheduler": {"concurrency": 8},
    }))
    config = load_config(path, use_env=False)
    assert config.backend.provider_url == "http://llm:8080"
    assert config.backend.timeout == 120.0
    assert config.scheduler.concurrency == 8
    assert config.scheduler.lease_seconds == 900


def test_tasks_parsed(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"tasks": [{
        "task_id": "digest",
        "actor_name": "bard",
        "narrative": "digest.json",
        "schedule": {"type": "interval", "seconds": 3600},
    }]}))
    config = load_config(path, use_env=False)
    assert isinstance(config.tasks[0].schedule, IntervalSchedule)
    assert config.tasks[0].schedule.seconds == 3600


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LLM_MODEL", "local-7b")
    monkeypatch.setenv("STORYLOOM_DATA_DIR", str(tmp_path / "d"))
    config = load_config(None)
    assert config.backend.default_model == "local-7b"
    assert config.data_dir == tmp_path / "d"


def test_invalid_values(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"scheduler": {"concurrency": "many"}}))
    with pytest.raises(ConfigError, match="Invalid config"):
        load_config(path, use_env=False)


def test_not_an_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        load_config(path, use_env=False)


def test_save_and_reload(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = ServerConfig(security={"bard": ["platform.*"]})
    save_config(config, path)
    assert load_config(path, use_env=False).security == {"bard": ["platform.*"]}


def test_platforms_parsed(tmp_path):
    """Each platform names one MCP transport: a command or a url."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "platforms": {
            "discord": {"command": "discord-mcp", "args": ["--guild", "123"]},
            "notes": {"url": "http://localhost:9000/mcp"},
        },
    }))
    config = load_config(path, use_env=False)
    assert config.platforms["discord"].args == ["--guild", "123"]
    assert config.platforms["notes"].url == "http://localhost:9000/mcp"


@pytest.mark.parametrize("server", [{}, {"command": "x", "url": "http://y"}])
def test_platform_needs_one_transport(tmp_path, server):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"platforms": {"chat": server}}))
    with pytest.raises(ConfigError):
        load_config(path, use_env=False)
