"""
Routes API pour la gestion des serveurs MCP.

Les erreurs du superviseur (SupervisorError) sont converties en réponses
HTTP par le handler enregistré dans main.create_app().
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel, Field

from ...features.mcp.supervisor import Supervisor

router = APIRouter()


class InstallServerRequest(BaseModel):
    server_id: str = Field(..., min_length=1)
    config: Dict[str, Any]


class ToggleServerRequest(BaseModel):
    enabled: bool


class CallToolRequest(BaseModel):
    name: str = Field(..., min_length=1)
    arguments: Optional[Dict[str, Any]] = None


class ReadResourceRequest(BaseModel):
    uri: str = Field(..., min_length=1)


class GetPromptRequest(BaseModel):
    name: str = Field(..., min_length=1)
    arguments: Optional[Dict[str, Any]] = None


def get_supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


@router.get("/servers")
async def api_list_servers(request: Request):
    """Liste les serveurs installés avec leur état."""
    supervisor = get_supervisor(request)
    return {"servers": [status.to_dict() for status in supervisor.list_installed_servers()]}


@router.post("/servers", status_code=201)
async def api_install_server(body: InstallServerRequest, request: Request):
    return await get_supervisor(request).install_server(body.server_id, body.config)


@router.delete("/servers/{server_id}")
async def api_uninstall_server(server_id: str, request: Request):
    return await get_supervisor(request).uninstall_server(server_id)


@router.patch("/servers/{server_id}")
async def api_update_server(server_id: str, request: Request, partial: Dict[str, Any] = Body(...)):
    """Mise à jour partielle (env/options fusionnés, null supprime une clé)."""
    return await get_supervisor(request).update_server_config(server_id, partial)


@router.post("/servers/{server_id}/toggle")
async def api_toggle_server(server_id: str, body: ToggleServerRequest, request: Request):
    return await get_supervisor(request).toggle_server(server_id, body.enabled)


@router.post("/servers/{server_id}/start")
async def api_start_server(server_id: str, request: Request):
    return await get_supervisor(request).start_server(server_id)


@router.post("/servers/{server_id}/stop")
async def api_stop_server(server_id: str, request: Request):
    return await get_supervisor(request).stop_server(server_id)


@router.post("/servers/{server_id}/refresh")
async def api_refresh_server(server_id: str, request: Request):
    return await get_supervisor(request).refresh_server(server_id)


@router.get("/tools")
async def api_list_tools(request: Request):
    tools = get_supervisor(request).list_all_tools()
    return {"tools": tools, "count": len(tools)}


@router.get("/resources")
async def api_list_resources(request: Request):
    resources = get_supervisor(request).list_all_resources()
    return {"resources": resources, "count": len(resources)}


@router.get("/prompts")
async def api_list_prompts(request: Request):
    prompts = get_supervisor(request).list_all_prompts()
    return {"prompts": prompts, "count": len(prompts)}


@router.post("/servers/{server_id}/tools/call")
async def api_call_tool(server_id: str, body: CallToolRequest, request: Request):
    result = await get_supervisor(request).call_tool(server_id, body.name, body.arguments)
    return {"success": True, "result": result}


@router.post("/servers/{server_id}/resources/read")
async def api_read_resource(server_id: str, body: ReadResourceRequest, request: Request):
    result = await get_supervisor(request).read_resource(server_id, body.uri)
    return {"success": True, "result": result}


@router.post("/servers/{server_id}/prompts/get")
async def api_get_prompt(server_id: str, body: GetPromptRequest, request: Request):
    result = await get_supervisor(request).get_prompt(server_id, body.name, body.arguments)
    return {"success": True, "result": result}
