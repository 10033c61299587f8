"""
LAN routing endpoints.

Handles:
- Per-connection iroute directives (JSON, or plain text for the client-connect hook)
- Server-wide routing table sync
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from gateway import TransportError
from routers.deps import get_routing
from schemas import ClientRoutingResponse, RouteDirectiveResponse
from services.routing import RoutingCompiler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/routing", tags=["routing"])


@router.get("/clients/{username}", response_model=ClientRoutingResponse)
async def get_client_routing(
    username: str,
    routing: RoutingCompiler = Depends(get_routing),
):
    """iroute directives for a connecting client."""
    directives = await routing.per_connection_directives(username)
    config = await routing.render_client_config(username) if directives else ""
    return ClientRoutingResponse(
        username=username,
        directives=[RouteDirectiveResponse(**d.to_dict()) for d in directives],
        config=config,
    )


@router.get("/clients/{username}/config", response_class=PlainTextResponse)
async def get_client_config(
    username: str,
    routing: RoutingCompiler = Depends(get_routing),
):
    """Config block for the client-connect hook, as plain text."""
    return await routing.render_client_config(username)


@router.get("/status", response_model=Dict)
async def get_routing_status(routing: RoutingCompiler = Depends(get_routing)):
    return routing.get_status()


@router.post("/sync", response_model=Dict)
async def sync_server_routing(
    force: bool = Query(False),
    routing: RoutingCompiler = Depends(get_routing),
):
    """Push all enabled LAN networks to the access server and reload it."""
    try:
        result = await routing.server_wide_sync(force=force)
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))

    message = (
        f"Routing updated with {len(result.networks) - 1} LAN network(s)"
        if result.applied
        else "Routing table unchanged"
    )
    return {"success": True, "message": message, "data": result.to_dict()}
