"""Session-managed streamable-HTTP endpoint (durable mode).

The MCP protocol surface (initialize negotiation, ``Mcp-Session-Id``
issuance, ping, routing and error envelopes) comes from the ``mcp`` SDK's
low-level server behind a ``StreamableHTTPSessionManager``. This module
mirrors the child's capability set onto that server, forwards calls into
``SessionManager`` and ties SDK session open/close to its hooks.
"""

import base64
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl
from starlette.datastructures import Headers
from starlette.types import Message, Receive, Scope, Send

from tele_mcp.core.context import BridgeContext
from tele_mcp.core.errors import BridgeError, ChildRpcError
from tele_mcp.core.logging import logger
from tele_mcp.services.capabilities import CapabilitySet


def rpc_error(exc: BridgeError) -> McpError:
    """JSON-RPC error for a failed forward; child errors keep their code."""
    if isinstance(exc, ChildRpcError):
        error = exc.error
        return McpError(
            types.ErrorData(
                code=error.get("code", types.INTERNAL_ERROR),
                message=str(error.get("message", "")),
                data=error.get("data"),
            )
        )
    return McpError(types.ErrorData(code=types.INTERNAL_ERROR, message=str(exc)))


def tool_error(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)],
        isError=True,
    )


class SessionGateway:
    """ASGI endpoint for ``/mcp`` in session mode.

    ``run`` builds the MCP server from the capability set and starts the SDK
    session manager; it must wrap every request, so it lives in the app
    lifespan.
    """

    def __init__(self) -> None:
        self.ctx: Optional[BridgeContext] = None
        self.server: Optional[Server] = None
        self.manager: Optional[StreamableHTTPSessionManager] = None

    @asynccontextmanager
    async def run(self, ctx: BridgeContext) -> AsyncIterator[None]:
        self.ctx = ctx
        self.server = self._build_server(ctx.capabilities)
        self._refresh_identity()
        self.manager = StreamableHTTPSessionManager(app=self.server, json_response=True)
        async with self.manager.run():
            yield

    def _build_server(self, caps: CapabilitySet) -> Server:
        server = Server("tele-mcp")

        # Registered handlers decide which capabilities the SDK advertises.
        # Without a snapshot everything is registered and checked per call.
        def offered(capability: str) -> bool:
            return caps.has(capability) or not caps.loaded

        if offered("tools"):

            @server.list_tools()
            async def list_tools() -> List[types.Tool]:
                current = await self._capabilities("tools")
                return [types.Tool.model_validate(tool) for tool in current.tools]

            @server.call_tool(validate_input=False)
            async def call_tool(name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
                await self._capabilities("tools")
                try:
                    result = await self._forward("tools/call", {"name": name, "arguments": arguments})
                except McpError as exc:
                    return tool_error(exc.error.message)
                return types.CallToolResult.model_validate(result)

        if offered("resources"):

            @server.list_resources()
            async def list_resources() -> List[types.Resource]:
                current = await self._capabilities("resources")
                return [types.Resource.model_validate(item) for item in current.resources]

            @server.list_resource_templates()
            async def list_resource_templates() -> List[types.ResourceTemplate]:
                current = await self._capabilities("resources")
                return [types.ResourceTemplate.model_validate(item) for item in current.resource_templates]

            @server.read_resource()
            async def read_resource(uri: AnyUrl) -> List[ReadResourceContents]:
                await self._capabilities("resources")
                result = await self._forward("resources/read", {"uri": str(uri)})
                contents = []
                for item in result.get("contents") or []:
                    if "blob" in item:
                        content = base64.b64decode(item["blob"])
                    else:
                        content = item.get("text", "")
                    contents.append(ReadResourceContents(content=content, mime_type=item.get("mimeType")))
                return contents

        if offered("prompts"):

            @server.list_prompts()
            async def list_prompts() -> List[types.Prompt]:
                current = await self._capabilities("prompts")
                return [types.Prompt.model_validate(item) for item in current.prompts]

            @server.get_prompt()
            async def get_prompt(name: str, arguments: Optional[Dict[str, str]]) -> types.GetPromptResult:
                await self._capabilities("prompts")
                params: Dict[str, Any] = {"name": name}
                if arguments is not None:
                    params["arguments"] = arguments
                result = await self._forward("prompts/get", params)
                return types.GetPromptResult.model_validate(result)

        return server

    def _refresh_identity(self) -> None:
        """Advertise the child's server info to sessions initialized from now on."""
        caps = self.ctx.capabilities
        if not caps.loaded:
            return
        self.server.name = caps.server_info.get("name") or "tele-mcp"
        self.server.version = caps.server_info.get("version")
        self.server.instructions = caps.instructions or None

    async def _capabilities(self, capability: str) -> CapabilitySet:
        caps = self.ctx.capabilities
        if not caps.loaded:
            caps = await self.ctx.load_capabilities() or caps
        if not caps.has(capability):
            raise McpError(
                types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Method not found: {capability}")
            )
        return caps

    def _session_id(self) -> str:
        request = self.server.request_context.request
        session_id = request.headers.get(MCP_SESSION_ID_HEADER) if request is not None else None
        if not session_id:
            raise McpError(types.ErrorData(code=types.INVALID_REQUEST, message="Missing Mcp-Session-Id"))
        return session_id

    async def _forward(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = await self.ctx.sessions.call(self._session_id(), method, params)
        except BridgeError as exc:
            raise rpc_error(exc) from exc
        return result or {}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        known = Headers(scope=scope).get(MCP_SESSION_ID_HEADER)
        method = scope["method"]
        if method == "POST" and known is None and not self.ctx.capabilities.loaded:
            # A new client: retry a failed startup introspection first.
            if await self.ctx.load_capabilities() is not None:
                self._refresh_identity()

        status = 0

        async def send_with_hooks(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
                issued = Headers(raw=message.get("headers", [])).get(MCP_SESSION_ID_HEADER)
                if known is None and issued and status < 400:
                    logger.info(f"Client {issued} connected")
                    self.ctx.sessions.register(issued)
            await send(message)

        await self.manager.handle_request(scope, receive, send_with_hooks)

        if method == "DELETE" and known and status < 400 and known in self.ctx.sessions:
            logger.info(f"Client {known} disconnected")
            await self.ctx.sessions.unregister(known)
