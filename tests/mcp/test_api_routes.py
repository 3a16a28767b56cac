"""
Tests de l'API HTTP /api/mcp (FastAPI via httpx.ASGITransport).

Le lifespan n'est pas exécuté par ASGITransport: le superviseur est
initialisé par la fixture puis injecté dans create_app().
"""
import httpx
import pytest
import pytest_asyncio

from mcp_supervisor.features.mcp.bridge import NativeBridgeError, NativeBridgeRegistry
from mcp_supervisor.features.mcp.supervisor import Supervisor
from mcp_supervisor.main import create_app


class EchoBridge:
    def __init__(self, config):
        self.config = config

    def handle_request(self, method, params):
        if method == "initialize":
            return {"protocolVersion": params["protocolVersion"], "capabilities": {}, "serverInfo": {"name": "echo"}}
        if method == "tools/list":
            return {"tools": [{"name": "echo"}]}
        if method == "tools/call":
            if params["name"] == "fail":
                raise NativeBridgeError("outil en échec", code=-32000)
            return {"content": [{"type": "text", "text": params["arguments"].get("text", "")}]}
        raise NativeBridgeError("Method not found", code=-32601)


@pytest_asyncio.fixture
async def client(fast_settings, store):
    registry = NativeBridgeRegistry()
    registry.register("echo", EchoBridge)
    sup = Supervisor(store=store, settings=fast_settings, registry=registry)
    await sup.initialize()

    app = create_app(supervisor=sup)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http
    await sup.cleanup()


async def _install_and_start(client, server_id="echo"):
    response = await client.post("/api/mcp/servers", json={
        "server_id": server_id,
        "config": {"type": "native", "nativeType": "echo"},
    })
    assert response.status_code == 201
    response = await client.post(f"/api/mcp/servers/{server_id}/start")
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["supervisor"]["servers_installed"] == 0


@pytest.mark.asyncio
async def test_install_start_call_and_list(client):
    started = await _install_and_start(client)
    assert started["state"] == "ready"
    assert started["tools_count"] == 1

    servers = (await client.get("/api/mcp/servers")).json()["servers"]
    assert servers[0]["id"] == "echo"
    assert servers[0]["running"] is True
    assert servers[0]["config"]["nativeType"] == "echo"

    tools = (await client.get("/api/mcp/tools")).json()
    assert tools["count"] == 1
    assert tools["tools"][0]["serverId"] == "echo"

    response = await client.post("/api/mcp/servers/echo/tools/call", json={"name": "echo", "arguments": {"text": "salut"}})
    assert response.status_code == 200
    assert response.json() == {"success": True, "result": {"content": [{"type": "text", "text": "salut"}]}}


@pytest.mark.asyncio
async def test_patch_toggle_stop_delete(client):
    await _install_and_start(client)

    patched = await client.patch("/api/mcp/servers/echo", json={"options": {"depth": 2}})
    assert patched.status_code == 200
    assert patched.json()["restarted"] is True
    assert patched.json()["config"]["options"] == {"depth": 2}

    toggled = await client.post("/api/mcp/servers/echo/toggle", json={"enabled": False})
    assert toggled.json()["running"] is False

    stopped = await client.post("/api/mcp/servers/echo/stop")
    assert stopped.json()["was_running"] is False

    deleted = await client.delete("/api/mcp/servers/echo")
    assert deleted.status_code == 200
    assert (await client.get("/api/mcp/servers")).json() == {"servers": []}


@pytest.mark.asyncio
async def test_error_mapping(client):
    missing = await client.post("/api/mcp/servers/ghost/start")
    assert missing.status_code == 404
    body = missing.json()
    assert body["success"] is False
    assert body["error"]["code"] == "server_not_found"

    invalid = await client.post("/api/mcp/servers", json={"server_id": "bad", "config": {"command": "npx"}})
    assert invalid.status_code == 400
    assert invalid.json()["error"]["details"]["key"] == "args"

    await client.post("/api/mcp/servers", json={"server_id": "echo", "config": {"type": "native", "nativeType": "echo"}})
    duplicate = await client.post("/api/mcp/servers", json={"server_id": "echo", "config": {"type": "native", "nativeType": "echo"}})
    assert duplicate.status_code == 400

    not_running = await client.post("/api/mcp/servers/echo/tools/call", json={"name": "echo"})
    assert not_running.status_code == 409
    assert not_running.json()["error"]["code"] == "server_not_running"

    await client.post("/api/mcp/servers/echo/start")
    remote = await client.post("/api/mcp/servers/echo/tools/call", json={"name": "fail"})
    assert remote.status_code == 502
    assert remote.json()["error"]["details"]["rpc_code"] == -32000


@pytest.mark.asyncio
async def test_request_body_validation(client):
    response = await client.post("/api/mcp/servers", json={"config": {}})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_patch_rejects_malformed_or_non_object_body(client):
    await client.post("/api/mcp/servers", json={"server_id": "echo", "config": {"type": "native", "nativeType": "echo"}})

    malformed = await client.patch(
        "/api/mcp/servers/echo",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert malformed.status_code == 422

    not_object = await client.patch("/api/mcp/servers/echo", json=["enabled", False])
    assert not_object.status_code == 422
