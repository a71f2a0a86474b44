from fastapi import Request, WebSocket

from tele_mcp.core.context import BridgeContext


async def get_context(request: Request) -> BridgeContext:
    return request.app.state.context


async def get_ws_context(websocket: WebSocket) -> BridgeContext:
    return websocket.app.state.context
