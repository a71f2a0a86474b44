import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import python_command
from tele_mcp.main import create_app, run, run_boot_command


def _paths(app) -> set:
    return {route.path for route in app.routes}


@pytest.mark.parametrize(
    "transport, present, absent",
    [
        ("websocket", "/ws", "/mcp"),
        ("http", "/mcp", "/ws"),
        ("session", "/mcp", "/ws"),
    ],
)
def test_routes_follow_transport(make_settings, transport, present, absent) -> None:
    paths = _paths(create_app(make_settings(transport=transport)))
    assert {"/health", "/status", present} <= paths
    assert absent not in paths


def test_boot_command_success_and_failure() -> None:
    run_boot_command(python_command("-c", "pass"))
    with pytest.raises(SystemExit):
        run_boot_command(python_command("-c", "raise SystemExit(2)"))


def test_run_requires_mcp_command(monkeypatch) -> None:
    monkeypatch.delenv("MCP_COMMAND", raising=False)
    with pytest.raises(SystemExit):
        run()


def test_websocket_spawn_failure_closes_with_internal_error(make_settings) -> None:
    app = create_app(make_settings(transport="websocket", mcp_command="/no/such/mcp-server"))
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as websocket:
            with pytest.raises(WebSocketDisconnect) as info:
                websocket.receive_text()
    assert info.value.code == 1011


def test_status_before_introspection(make_settings) -> None:
    with TestClient(create_app(make_settings(transport="http", pool_size=1))) as client:
        body = client.get("/status").json()
    assert body["transport"] == "http"
    assert body["pool"] == {"capacity": 1, "idle": 1}
    assert body["server"] is None
    assert body["sessions"] == 0
