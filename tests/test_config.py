import pytest

from tele_mcp.core.config import BridgeSettings, load_settings


@pytest.mark.parametrize("requested, expected", [(-3, 0), (0, 0), (4, 4), (10, 10), (25, 10)])
def test_pool_size_is_clamped(requested: int, expected: int) -> None:
    assert BridgeSettings(pool_size=requested).pool_size == expected


def test_settings_are_immutable() -> None:
    settings = BridgeSettings()
    with pytest.raises(Exception):
        settings.pool_size = 3


def test_load_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("MCP_COMMAND", "npx some-server --flag")
    monkeypatch.setenv("POOL_SIZE", "99")
    monkeypatch.setenv("TRANSPORT", "http")
    monkeypatch.setenv("DURABLE_MODE", "false")
    monkeypatch.setenv("RESPONSE_TIMEOUT_SEC", "12.5")
    settings = load_settings()
    assert settings.mcp_command == "npx some-server --flag"
    assert settings.pool_size == 10
    assert settings.transport == "http"
    assert settings.durable_mode is False
    assert settings.response_timeout_sec == 12.5


def test_durable_mode_only_disabled_by_literal_false(monkeypatch) -> None:
    monkeypatch.setenv("DURABLE_MODE", "no")
    assert load_settings().durable_mode is True
    monkeypatch.delenv("DURABLE_MODE")
    assert load_settings().durable_mode is True


def test_defaults(monkeypatch) -> None:
    for name in ("MCP_COMMAND", "POOL_SIZE", "TRANSPORT", "DURABLE_MODE", "BRIDGE_PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.transport == "session"
    assert settings.port == 8080
    assert settings.terminate_grace_sec == 2.0
    assert settings.terminate_secondary_sec == 1.0
    assert settings.pool_maintenance_interval_sec == 5.0
    assert settings.response_timeout_sec == 30.0
