"""Tests unitaires: transports (sous-processus stdio et bridge natif).

Contraintes:
    - Aucun appel réseau
    - Le seul sous-processus lancé est le faux serveur MCP (sys.executable)
"""

import asyncio
import sys

import pytest

from mcp_supervisor.core.exceptions import TransportError
from mcp_supervisor.features.mcp.bridge import (
    NativeBridgeConfig,
    NativeBridgeError,
    NativeBridgeExit,
    NativeBridgeRegistry,
)
from mcp_supervisor.features.mcp.codec import JsonRpcNotification, JsonRpcRequest, JsonRpcResponse
from mcp_supervisor.features.mcp.transport import (
    InProcessBridgeTransport,
    SpawnedProcessTransport,
    build_command_line,
    build_process_env,
)


@pytest.mark.unit
def test_build_command_line_quotes_args_with_whitespace():
    line = build_command_line("npx", ["-y", "@scope/pkg", "C:\\Program Files\\data", '"already quoted"'])
    assert line == 'npx -y @scope/pkg "C:\\Program Files\\data" "already quoted"'


@pytest.mark.unit
def test_build_process_env_merges_overrides(monkeypatch):
    monkeypatch.setenv("BASE_VAR", "base")
    env = build_process_env({"EXTRA": 1, "BASE_VAR": "override"})
    assert env["BASE_VAR"] == "override"
    assert env["EXTRA"] == "1"
    assert "PATH" in env


class EchoBridge:
    def __init__(self):
        self.notifications = []
        self.shutdown_called = False

    async def handle_request(self, method, params):
        if method == "boom":
            raise RuntimeError("explosion")
        if method == "refuse":
            raise NativeBridgeError("refusé", code=-32602)
        if method == "quit":
            raise NativeBridgeExit("bridge fermé", code=0)
        if method == "slow":
            await asyncio.sleep(params["delay"])
        return {"method": method, "params": params}

    def handle_notification(self, method, params):
        self.notifications.append(method)

    def shutdown(self):
        self.shutdown_called = True


def _collect(transport, count):
    messages = []
    done = asyncio.Event()

    def on_message(message):
        messages.append(message)
        if len(messages) >= count:
            done.set()

    transport.on_message(on_message)
    return messages, done


@pytest.mark.asyncio
async def test_bridge_transport_delivers_results_and_errors_as_responses():
    bridge = EchoBridge()
    transport = InProcessBridgeTransport("native", bridge)
    messages, done = _collect(transport, 3)
    await transport.start()

    await transport.send(JsonRpcRequest(id=1, method="tools/list", params={}))
    await transport.send(JsonRpcRequest(id=2, method="boom"))
    await transport.send(JsonRpcRequest(id=3, method="refuse"))
    await transport.send(JsonRpcNotification(method="notifications/initialized"))
    await asyncio.wait_for(done.wait(), 1.0)

    by_id = {m.id: m for m in messages}
    assert by_id[1].result == {"method": "tools/list", "params": {}}
    assert by_id[2].error["code"] == -32603
    assert "explosion" in by_id[2].error["message"]
    assert by_id[3].error == {"code": -32602, "message": "refusé"}
    assert all(isinstance(m, JsonRpcResponse) for m in messages)
    assert bridge.notifications == ["notifications/initialized"]

    await transport.terminate()
    assert bridge.shutdown_called is True
    with pytest.raises(TransportError):
        await transport.send(JsonRpcRequest(id=4, method="tools/list"))


@pytest.mark.asyncio
async def test_bridge_exit_is_reported_through_on_exit():
    transport = InProcessBridgeTransport("native", EchoBridge())
    exits = []
    transport.on_exit(lambda code, reason: exits.append((code, reason)))
    await transport.start()

    await transport.send(JsonRpcRequest(id=1, method="quit"))
    await asyncio.sleep(0.01)
    assert exits == [(0, "bridge fermé")]
    assert transport.is_alive is False


@pytest.mark.asyncio
async def test_bridge_terminate_cancels_in_flight_requests_without_exit():
    transport = InProcessBridgeTransport("native", EchoBridge())
    exits, messages = [], []
    transport.on_exit(lambda code, reason: exits.append(code))
    transport.on_message(messages.append)
    await transport.start()

    await transport.send(JsonRpcRequest(id=1, method="slow", params={"delay": 5}))
    await transport.terminate()
    assert messages == []
    assert exits == []


@pytest.mark.unit
def test_registry_resolves_server_id_before_native_type():
    registry = NativeBridgeRegistry()
    registry.register("web-fetch", lambda config: ("type", config.server_id))
    registry.register("special", lambda config: ("id", config.server_id))

    assert registry.resolve(NativeBridgeConfig(server_id="special", native_type="web-fetch"))(
        NativeBridgeConfig(server_id="special")
    ) == ("id", "special")
    assert registry.resolve(NativeBridgeConfig(server_id="other", native_type="web-fetch")) is not None
    with pytest.raises(TransportError):
        registry.create(NativeBridgeConfig(server_id="unknown", native_type="nope"))
    with pytest.raises(ValueError):
        registry.register("web-fetch", lambda config: None)


@pytest.mark.unit
def test_registry_rejects_objects_without_handle_request():
    registry = NativeBridgeRegistry()
    registry.register("bad", lambda config: object())
    with pytest.raises(TransportError):
        registry.create(NativeBridgeConfig(server_id="bad"))


@pytest.mark.asyncio
async def test_spawned_transport_round_trip_and_unexpected_exit(fake_config):
    config = fake_config()
    transport = SpawnedProcessTransport("fake", config["command"], config["args"])
    messages, exits = [], []
    got_response = asyncio.Event()
    exited = asyncio.Event()

    def on_message(message):
        messages.append(message)
        got_response.set()

    def on_exit(code, reason):
        exits.append(code)
        exited.set()

    transport.on_message(on_message)
    transport.on_exit(on_exit)
    await transport.start()
    assert transport.pid is not None

    await transport.send(JsonRpcRequest(id=1, method="tools/list", params={}))
    await asyncio.wait_for(got_response.wait(), 5.0)
    assert messages[0].id == 1
    assert any(t["name"] == "echo" for t in messages[0].result["tools"])

    await transport.send(JsonRpcRequest(id=2, method="tools/call", params={"name": "crash"}))
    await asyncio.wait_for(exited.wait(), 5.0)
    assert exits == [7]
    await transport.terminate()


@pytest.mark.asyncio
async def test_spawned_transport_terminate_does_not_report_exit(fake_config):
    config = fake_config()
    transport = SpawnedProcessTransport("fake", config["command"], config["args"], stop_grace_s=2.0)
    exits = []
    transport.on_exit(lambda code, reason: exits.append(code))
    await transport.start()
    await transport.terminate()
    assert transport.is_alive is False
    assert exits == []


@pytest.mark.asyncio
async def test_spawned_transport_unknown_command_raises_transport_error():
    transport = SpawnedProcessTransport("ghost", "/nonexistent/mcp-server-binary", [])
    with pytest.raises(TransportError):
        await transport.start()


@pytest.mark.asyncio
async def test_spawned_transport_send_after_exit_raises():
    transport = SpawnedProcessTransport("fake", sys.executable, ["-c", "pass"])
    await transport.start()
    await asyncio.wait_for(transport._process.wait(), 5.0)
    with pytest.raises(TransportError):
        await transport.send(JsonRpcRequest(id=1, method="tools/list"))
    await transport.terminate()
