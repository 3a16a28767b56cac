"""
Tests d'intégration du superviseur avec des serveurs MCP stdio (spawned).

Le faux serveur (tests/fixtures/fake_mcp_server_stdio.py) est lancé avec
l'interpréteur courant: aucun npx, aucun réseau.
"""
import asyncio
import os

import pytest

from mcp_supervisor.core.exceptions import (
    RemoteError,
    RequestTimeoutError,
    ServerNotReadyError,
    ServerNotRunningError,
    ServerStoppedError,
    TransportError,
)
from mcp_supervisor.features.mcp.supervisor import Supervisor


async def _wait_for(predicate, timeout=5.0, interval=0.02):
    """Attend qu'une condition devienne vraie (échec du test sinon)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition non atteinte avant le délai")
        await asyncio.sleep(interval)


def _text(result):
    return result["content"][0]["text"]


# Démarrage et handshake
@pytest.mark.asyncio
async def test_start_is_idempotent_and_caches_tools(supervisor, fake_config):
    """Deux démarrages: une seule instance, outils en cache."""
    await supervisor.install_server("fake", fake_config())

    first = await supervisor.start_server("fake")
    assert first["already_running"] is False
    assert first["state"] == "ready"
    assert first["tools_count"] == 6

    instance = supervisor.get_instance("fake")
    second = await supervisor.start_server("fake")
    assert second["already_running"] is True
    assert supervisor.get_instance("fake") is instance
    assert instance.server_info["name"] == "fake-mcp"


@pytest.mark.asyncio
async def test_empty_capabilities_still_lists_tools(supervisor, fake_config):
    """capabilities == {} : tools/list est quand même appelé."""
    await supervisor.install_server("empty", fake_config("--empty-capabilities"))
    await supervisor.start_server("empty")

    instance = supervisor.get_instance("empty")
    assert instance.capabilities == {}
    assert {t["name"] for t in instance.tools} >= {"echo", "slow_echo"}
    assert instance.resources == []
    assert instance.prompts == []


@pytest.mark.asyncio
async def test_tools_false_skips_listing(supervisor, fake_config):
    await supervisor.install_server("notools", fake_config("--no-tools"))
    result = await supervisor.start_server("notools")
    assert result["tools_count"] == 0


@pytest.mark.asyncio
async def test_banner_line_on_stdout_is_tolerated(supervisor, fake_config):
    """Une ligne non-JSON avant le handshake est ignorée."""
    await supervisor.install_server("banner", fake_config("--banner"))
    result = await supervisor.start_server("banner")
    assert result["state"] == "ready"

    answer = await supervisor.call_tool("banner", "echo", {"text": "ok"})
    assert _text(answer) == "ok"


@pytest.mark.asyncio
async def test_tools_pagination_is_followed(supervisor, fake_config):
    await supervisor.install_server("paged", fake_config("--paginate"))
    result = await supervisor.start_server("paged")
    assert result["tools_count"] == 6
    names = [t["name"] for t in supervisor.get_instance("paged").tools]
    assert names[0] == "echo" and names[-1] == "crash"


@pytest.mark.asyncio
async def test_exit_during_initialize_leaves_no_instance(supervisor, fake_config):
    await supervisor.install_server("dies", fake_config("--exit-on-initialize"))

    with pytest.raises(TransportError):
        await supervisor.start_server("dies")

    assert supervisor.get_instance("dies") is None
    status = {s.id: s for s in supervisor.list_installed_servers()}["dies"]
    assert status.running is False
    assert status.state == "error"
    assert status.last_error


@pytest.mark.asyncio
async def test_initialize_timeout_leaves_no_instance(supervisor, fake_config):
    supervisor.settings.initialize_timeout_s = 0.3
    await supervisor.install_server("hangs", fake_config("--hang-initialize"))

    with pytest.raises(RequestTimeoutError):
        await supervisor.start_server("hangs")

    assert supervisor.get_instance("hangs") is None
    status = {s.id: s for s in supervisor.list_installed_servers()}["hangs"]
    assert status.state == "error"
    assert "initialize" in status.last_error


@pytest.mark.asyncio
async def test_unknown_command_is_transport_error(supervisor):
    await supervisor.install_server("ghost", {"command": "/nonexistent/mcp-server-binary", "args": []})
    with pytest.raises(TransportError):
        await supervisor.start_server("ghost")
    assert supervisor.get_instance("ghost") is None


# Appels d'outils
@pytest.mark.asyncio
async def test_call_tool_on_stopped_server_fails_without_write(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config())
    with pytest.raises(ServerNotRunningError):
        await supervisor.call_tool("fake", "echo", {"text": "x"})


@pytest.mark.asyncio
async def test_call_tool_while_starting_is_not_ready(supervisor, fake_config):
    """Pendant le handshake: ServerNotReadyError, aucune requête supplémentaire."""
    await supervisor.install_server("hangs", fake_config("--hang-initialize"))
    start_task = asyncio.create_task(supervisor.start_server("hangs"))
    await _wait_for(lambda: supervisor.get_instance("hangs") is not None
                    and supervisor.get_instance("hangs").pending_count == 1)

    instance = supervisor.get_instance("hangs")
    with pytest.raises(ServerNotReadyError) as exc_info:
        await supervisor.call_tool("hangs", "echo", {"text": "x"})
    assert exc_info.value.state == "starting"
    assert instance.pending_count == 1

    await supervisor.stop_server("hangs")
    with pytest.raises(ServerStoppedError):
        await start_task


@pytest.mark.asyncio
async def test_concurrent_calls_answered_out_of_order(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config())
    await supervisor.start_server("fake")

    slow, fast = await asyncio.gather(
        supervisor.call_tool("fake", "slow_echo", {"text": "lent", "delay": 0.5}),
        supervisor.call_tool("fake", "slow_echo", {"text": "rapide", "delay": 0.05}),
    )
    assert _text(slow) == "lent"
    assert _text(fast) == "rapide"
    assert supervisor.get_instance("fake").pending_count == 0
    assert supervisor.last_activity("fake") is not None


@pytest.mark.asyncio
async def test_unknown_tool_is_remote_error(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config())
    await supervisor.start_server("fake")

    with pytest.raises(RemoteError) as exc_info:
        await supervisor.call_tool("fake", "nope")
    assert exc_info.value.rpc_code == -32602
    assert exc_info.value.message.startswith("MCP Error:")


@pytest.mark.asyncio
async def test_tool_call_timeout(supervisor, fake_config):
    supervisor.settings.tool_call_timeout_s = 0.2
    await supervisor.install_server("fake", fake_config())
    await supervisor.start_server("fake")

    with pytest.raises(RequestTimeoutError):
        await supervisor.call_tool("fake", "slow_echo", {"text": "x", "delay": 2})
    assert supervisor.get_instance("fake").pending_count == 0


@pytest.mark.asyncio
async def test_env_is_passed_to_process(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config(env={"FAKE_MCP_TOKEN": "s3cret"}))
    await supervisor.start_server("fake")
    answer = await supervisor.call_tool("fake", "get_env", {"name": "FAKE_MCP_TOKEN"})
    assert _text(answer) == "s3cret"


@pytest.mark.asyncio
async def test_roots_list_request_from_server_is_answered(supervisor, fake_config, tmp_path):
    """Le serveur envoie roots/list; le superviseur répond avec le cwd."""
    await supervisor.install_server("fake", fake_config(cwd=str(tmp_path)))
    await supervisor.start_server("fake")

    answer = await supervisor.call_tool("fake", "ask_roots")
    roots = answer["roots"]["roots"]
    assert roots[0]["name"] == "workspace"
    assert roots[0]["uri"] == tmp_path.resolve().as_uri()


@pytest.mark.asyncio
async def test_resources_and_prompts(supervisor, fake_config):
    await supervisor.install_server("rich", fake_config("--with-resources", "--with-prompts"))
    await supervisor.start_server("rich")

    resources = supervisor.list_all_resources()
    assert resources == [{"uri": "fake://readme", "name": "readme", "serverId": "rich", "serverName": "rich"}]
    prompts = supervisor.list_all_prompts()
    assert prompts[0]["name"] == "greet" and prompts[0]["serverId"] == "rich"

    content = await supervisor.read_resource("rich", "fake://readme")
    assert content["contents"][0]["text"] == "contenu de fake://readme"

    prompt = await supervisor.get_prompt("rich", "greet", {"who": "Alice"})
    assert prompt["messages"][0]["content"]["text"] == "Bonjour Alice"

    refreshed = await supervisor.refresh_server("rich")
    assert refreshed["resources_count"] == 1
    assert refreshed["prompts_count"] == 1


# Arrêt, pannes et redémarrages
@pytest.mark.asyncio
async def test_stop_fails_pending_requests(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config())
    await supervisor.start_server("fake")

    call = asyncio.create_task(supervisor.call_tool("fake", "slow_echo", {"text": "x", "delay": 5}))
    await _wait_for(lambda: supervisor.get_instance("fake").pending_count == 1)

    result = await supervisor.stop_server("fake")
    assert result["was_running"] is True
    with pytest.raises(ServerStoppedError):
        await call
    assert supervisor.get_instance("fake") is None

    again = await supervisor.stop_server("fake")
    assert again["was_running"] is False


@pytest.mark.asyncio
async def test_crash_with_auto_restart_restarts_instance(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config())
    await supervisor.start_server("fake")
    first = supervisor.get_instance("fake")

    with pytest.raises(TransportError):
        await supervisor.call_tool("fake", "crash")

    await _wait_for(lambda: supervisor.get_instance("fake") is not None
                    and supervisor.get_instance("fake") is not first
                    and supervisor.get_instance("fake").is_ready)
    answer = await supervisor.call_tool("fake", "echo", {"text": "de retour"})
    assert _text(answer) == "de retour"


@pytest.mark.asyncio
async def test_crash_without_auto_restart_reports_error(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config(autoRestart=False))
    await supervisor.start_server("fake")

    with pytest.raises(TransportError):
        await supervisor.call_tool("fake", "crash")

    await _wait_for(lambda: supervisor.get_instance("fake") is None)
    await asyncio.sleep(supervisor.settings.restart_delay_s * 4)
    assert supervisor.get_instance("fake") is None
    status = {s.id: s for s in supervisor.list_installed_servers()}["fake"]
    assert status.state == "error"
    assert "7" in status.last_error


@pytest.mark.asyncio
async def test_update_config_restarts_running_server_in_new_cwd(supervisor, fake_config, tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    await supervisor.install_server("fake", fake_config())
    await supervisor.start_server("fake")
    before = supervisor.get_instance("fake")

    result = await supervisor.update_server_config("fake", {"cwd": str(workdir)})
    assert result["restarted"] is True
    assert result["config"]["cwd"] == str(workdir)
    assert supervisor.get_instance("fake") is not before

    answer = await supervisor.call_tool("fake", "get_cwd")
    assert os.path.realpath(_text(answer)) == os.path.realpath(str(workdir))


@pytest.mark.asyncio
async def test_update_config_of_stopped_server_does_not_start_it(supervisor, fake_config):
    await supervisor.install_server("fake", fake_config())
    result = await supervisor.update_server_config("fake", {"env": {"A": "1"}})
    assert result["restarted"] is False
    assert supervisor.get_instance("fake") is None


@pytest.mark.asyncio
async def test_cleanup_stops_everything(fast_settings, store, fake_config):
    sup = Supervisor(store=store, settings=fast_settings)
    await sup.initialize()
    await sup.install_server("a", fake_config())
    await sup.install_server("b", fake_config())
    await sup.start_server("a")
    await sup.start_server("b")
    processes = [sup.get_instance(i).transport for i in ("a", "b")]

    await sup.cleanup()
    assert sup.get_status()["servers_running"] == 0
    assert all(not transport.is_alive for transport in processes)
