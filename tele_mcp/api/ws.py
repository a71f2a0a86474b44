from fastapi import APIRouter, Depends, WebSocket

from tele_mcp.api.deps import get_ws_context
from tele_mcp.core.context import BridgeContext
from tele_mcp.core.errors import SpawnError
from tele_mcp.core.logging import logger
from tele_mcp.websocket.bridge import TransportBridge

router = APIRouter()


@router.websocket("/ws")
async def bridge_socket(websocket: WebSocket, ctx: BridgeContext = Depends(get_ws_context)) -> None:
    await websocket.accept()
    peer = websocket.client.host if websocket.client else "unknown"
    try:
        process = await ctx.acquire_process()
    except SpawnError as exc:
        logger.error(f"Failed to start process for {peer}: {exc}")
        await websocket.close(code=1011, reason="failed to start process")
        return

    logger.info(f"WebSocket client {peer} bound to pid {process.pid}")
    bridge = TransportBridge(websocket, process, ctx.processes)
    await bridge.run()
    logger.info(f"WebSocket client {peer} disconnected (pid {process.pid} released)")
