import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from conftest import python_command
from tele_mcp.api.gateway import relay_forever
from tele_mcp.main import create_app
from tele_mcp.services.process import ProcessManager

JSON_ONLY = {"MCP-Protocol-Version": "2025-03-26", "Accept": "application/json"}
BOTH = {"MCP-Protocol-Version": "2025-03-26", "Accept": "application/json, text/event-stream"}


@pytest.fixture
def gateway(make_settings):
    def _open(**overrides):
        settings = make_settings(transport="http", **overrides)
        return TestClient(create_app(settings))

    return _open


def _record_spawns(client: TestClient) -> list:
    manager = client.app.state.context.processes
    original = manager.spawn
    spawned = []

    async def _spawn(command):
        process = await original(command)
        spawned.append(process)
        return process

    manager.spawn = _spawn
    return spawned


def _rpc(method: str, msg_id=1, **extra) -> dict:
    return {"jsonrpc": "2.0", "id": msg_id, "method": method, **extra}


def test_get_without_event_stream_accept_is_rejected_before_spawn(gateway) -> None:
    with gateway() as client:
        spawned = _record_spawns(client)
        response = client.get("/mcp", headers={"MCP-Protocol-Version": "2025-03-26"})
    assert response.status_code == 400
    assert "text/event-stream" in response.json()["detail"]
    assert spawned == []


def test_missing_protocol_version_header(gateway) -> None:
    with gateway() as client:
        spawned = _record_spawns(client)
        response = client.post("/mcp", json=_rpc("ping"), headers={"Accept": "application/json"})
    assert response.status_code == 400
    assert "MCP-Protocol-Version" in response.json()["detail"]
    assert spawned == []


def test_client_response_is_accepted_without_spawning(gateway) -> None:
    with gateway() as client:
        spawned = _record_spawns(client)
        response = client.post("/mcp", json={"result": 1}, headers=JSON_ONLY)
    assert response.status_code == 202
    assert spawned == []


def test_ping_returns_the_child_response_verbatim(gateway) -> None:
    with gateway() as client:
        spawned = _record_spawns(client)
        response = client.post("/mcp", json=_rpc("ping", 42), headers=JSON_ONLY)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    assert response.content == b'{"jsonrpc": "2.0", "id": 42, "result": {}}'
    assert len(spawned) == 1
    assert spawned[0].returncode is not None


def test_multiline_body_is_sent_as_one_line(gateway) -> None:
    body = json.dumps(_rpc("tools/call", 5, params={"name": "echo", "arguments": {"text": "x"}}), indent=2)
    with gateway() as client:
        response = client.post("/mcp", content=body, headers=JSON_ONLY)
    assert response.status_code == 200
    assert response.json()["result"]["content"][0]["text"] == "x"


def test_notifications_and_noise_are_skipped_until_the_response(gateway) -> None:
    with gateway() as client:
        response = client.post("/mcp", json=_rpc("chatty", 9), headers=JSON_ONLY)
    assert response.status_code == 200
    assert response.json() == {"jsonrpc": "2.0", "id": 9, "result": {"chatty": True}}


def test_null_id_response_is_a_notification_ack(gateway) -> None:
    with gateway() as client:
        response = client.post("/mcp", json=_rpc("notify_ack", 3), headers=JSON_ONLY)
    assert response.status_code == 202
    assert response.content == b""


def test_silent_child_times_out(gateway) -> None:
    with gateway(response_timeout_sec=0.5) as client:
        spawned = _record_spawns(client)
        response = client.post("/mcp", json=_rpc("hang"), headers=JSON_ONLY)
    assert response.status_code == 504
    assert response.json()["detail"] == "Response timeout"
    assert spawned[0].returncode is not None


def test_child_exit_without_answer_is_a_server_error(gateway) -> None:
    payload = _rpc("tools/call", 2, params={"name": "crash"})
    with gateway() as client:
        response = client.post("/mcp", json=payload, headers=JSON_ONLY)
    assert response.status_code == 500
    assert "Failed to read response" in response.json()["detail"]


@pytest.mark.parametrize("method", ["put", "patch", "delete"])
def test_other_methods_are_not_allowed(gateway, method) -> None:
    with gateway() as client:
        response = client.request(method.upper(), "/mcp", headers=JSON_ONLY)
    assert response.status_code == 405
    assert response.headers["allow"] == "GET, POST"


@pytest.mark.parametrize("body", [b"{not json", b"[1, 2, 3]", b'"text"'])
def test_malformed_bodies_are_rejected(gateway, body) -> None:
    with gateway() as client:
        spawned = _record_spawns(client)
        response = client.post("/mcp", content=body, headers=JSON_ONLY)
    assert response.status_code == 400
    assert spawned == []


def test_post_requires_json_accept(gateway) -> None:
    headers = {"MCP-Protocol-Version": "2025-03-26", "Accept": "text/event-stream"}
    with gateway() as client:
        response = client.post("/mcp", json=_rpc("ping"), headers=headers)
    assert response.status_code == 400


def test_strict_accept_requires_both_types(gateway) -> None:
    with gateway(strict_accept=True) as client:
        rejected = client.post("/mcp", json=_rpc("ping"), headers=JSON_ONLY)
        accepted = client.post("/mcp", json=_rpc("ping"), headers=BOTH)
    assert rejected.status_code == 400
    assert accepted.status_code == 200


def test_event_stream_post_relays_and_ends_with_done(gateway) -> None:
    with gateway() as client:
        response = client.post("/mcp", json=_rpc("ping", 8), headers=BOTH)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.text == (
        'data: {"jsonrpc": "2.0", "id": 8, "result": {}}\n\n'
        "event: done\ndata: \n\n"
    )


def test_event_stream_stops_after_first_line_without_id(gateway) -> None:
    with gateway() as client:
        response = client.post("/mcp", json=_rpc("chatty", 4), headers=BOTH)
    events = response.text.split("\n\n")
    assert events[0].startswith('data: {"jsonrpc": "2.0", "method": "notifications/progress"')
    assert events[1] == "event: done\ndata: "


def test_relay_forever_forwards_json_lines_until_exit() -> None:
    script = (
        "import json\n"
        "print(json.dumps({'jsonrpc': '2.0', 'method': 'notifications/message'}))\n"
        "print('plain log line')\n"
        "print(json.dumps({'jsonrpc': '2.0', 'id': 1, 'result': {}}))\n"
    )

    async def _run():
        manager = ProcessManager(grace_sec=0.5, secondary_sec=0.5)
        process = await manager.spawn(python_command("-c", script))
        events = [event async for event in relay_forever(process, manager)]
        return events, process

    events, process = asyncio.run(_run())
    assert events == [
        b'data: {"jsonrpc": "2.0", "method": "notifications/message"}\n\n',
        b'data: {"jsonrpc": "2.0", "id": 1, "result": {}}\n\n',
    ]
    assert process.terminated
