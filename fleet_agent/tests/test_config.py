"""Tests for settings loading and startup validation."""

import pytest

from fleet_agent.config import Settings, check_settings, load_settings
from fleet_agent.errors import ConfigError


def _valid(**overrides) -> Settings:
    values = {"backend_url": "wss://fleet.example.com/agent", "token": "abc"}
    values.update(overrides)
    return Settings(**values)


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    cfg = Settings()

    assert cfg.runtime_binary == "nerdctl"
    assert cfg.namespace == "fleet"
    assert cfg.heartbeat_miss_limit == 3
    assert cfg.backoff_cap == 60.0
    assert cfg.provision_on_start is True


def test_toml_file_is_read(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.toml").write_text(
        'backend_url = "wss://fleet.example.com/agent"\n'
        'token = "from-file"\n'
        'heartbeat_interval = 5\n'
    )

    cfg = Settings()

    assert cfg.backend_url == "wss://fleet.example.com/agent"
    assert cfg.token == "from-file"
    assert cfg.heartbeat_interval == 5.0


def test_env_overrides_toml(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.toml").write_text('token = "from-file"\n')
    monkeypatch.setenv("FLEET_AGENT_TOKEN", "from-env")
    monkeypatch.setenv("FLEET_AGENT_HTTP_PORT", "9090")

    cfg = Settings()

    assert cfg.token == "from-env"
    assert cfg.http_port == 9090


def test_check_settings_accepts_valid():
    check_settings(_valid())


@pytest.mark.parametrize("overrides,match", [
    ({"backend_url": "http://fleet.example.com"}, "backend_url"),
    ({"token": ""}, "token"),
    ({"log_format": "yaml"}, "log_format"),
    ({"namespace": ""}, "namespace"),
])
def test_check_settings_rejects(overrides, match):
    with pytest.raises(ConfigError, match=match):
        check_settings(_valid(**overrides))


def test_bad_typed_value_is_reported_not_raised(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FLEET_AGENT_HTTP_PORT", "abc")

    cfg, error = load_settings()

    assert isinstance(error, ConfigError)
    assert "http_port" in str(error)
    assert cfg.http_port == 8080


def test_load_settings_without_problems(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)

    cfg, error = load_settings()

    assert error is None
    assert cfg.namespace == "fleet"
