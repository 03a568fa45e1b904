"""
API routes for PlaySync
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from loguru import logger
from starlette.requests import HTTPConnection

from ..relay import RelayServer
from .models import RelayStatus

router = APIRouter(prefix="/api/v1")
ws_router = APIRouter()


def get_relay(connection: HTTPConnection) -> RelayServer:
    """Get the RelayServer owned by the running app"""
    return connection.app.state.relay


@ws_router.websocket("/")
async def relay_endpoint(websocket: WebSocket, relay: RelayServer = Depends(get_relay)):
    """WebSocket endpoint every sync endpoint connects to"""
    await websocket.accept()
    remote = None
    if websocket.client:
        remote = f"{websocket.client.host}:{websocket.client.port}"

    connection = relay.register(websocket, remote=remote)
    writer = asyncio.create_task(connection.pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            relay.handle_message(connection, raw)
    except Exception as e:
        logger.error(f"WebSocket error from {connection.label}: {e}")
    finally:
        relay.unregister(connection)
        writer.cancel()


@router.get("/status")
async def get_status(relay: RelayServer = Depends(get_relay)) -> RelayStatus:
    """Get relay status"""
    try:
        return RelayStatus(**relay.status())
    except Exception as e:
        logger.error(f"Error getting status: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/connections/{connection_id}")
async def get_connection(connection_id: str, relay: RelayServer = Depends(get_relay)):
    """Get one connection's state"""
    connection = relay.registry.get(connection_id)
    if not connection:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection.to_dict()
