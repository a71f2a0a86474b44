from typing import Any, Dict, List

from pydantic import BaseModel, Field

from tele_mcp.core.errors import ChildRpcError
from tele_mcp.core.logging import logger
from tele_mcp.services.process import ProcessManager
from tele_mcp.services.stdio_client import PROTOCOL_VERSION, StdioRpcClient

MIRRORED_CAPABILITIES = ("tools", "resources", "prompts")


class CapabilitySet(BaseModel):
    """What the wrapped server offers, discovered once from a template child.

    Descriptors are copied through untouched; the gateway never interprets
    tool schemas or resource contents.
    """

    loaded: bool = False
    protocol_version: str = PROTOCOL_VERSION
    server_info: Dict[str, Any] = Field(default_factory=lambda: {"name": "tele-mcp", "version": "0.0.0"})
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    instructions: str = ""
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    resources: List[Dict[str, Any]] = Field(default_factory=list)
    resource_templates: List[Dict[str, Any]] = Field(default_factory=list)
    prompts: List[Dict[str, Any]] = Field(default_factory=list)

    def has(self, capability: str) -> bool:
        return capability in self.capabilities

    def initialize_result(self, requested_version: str = "") -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "protocolVersion": requested_version or self.protocol_version,
            "capabilities": self.capabilities,
            "serverInfo": self.server_info,
        }
        if self.instructions:
            result["instructions"] = self.instructions
        return result

    def listing(self, method: str) -> Dict[str, Any]:
        if method == "tools/list":
            return {"tools": self.tools}
        if method == "resources/list":
            return {"resources": self.resources}
        if method == "resources/templates/list":
            return {"resourceTemplates": self.resource_templates}
        if method == "prompts/list":
            return {"prompts": self.prompts}
        raise KeyError(method)


async def _list_all(client: StdioRpcClient, method: str, key: str) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    cursor = None
    while True:
        params = {"cursor": cursor} if cursor else {}
        result = await client.request(method, params) or {}
        items.extend(result.get(key) or [])
        cursor = result.get("nextCursor")
        if not cursor:
            return items


async def introspect(manager: ProcessManager, command: str, timeout_sec: float = 30.0) -> CapabilitySet:
    """Start a throwaway child, initialize it and record what it offers."""
    process = await manager.spawn(command)
    client = StdioRpcClient(process, manager, timeout_sec, client_name="tele-mcp-introspector")
    try:
        init = await client.initialize()
        child_caps = init.get("capabilities") or {}
        caps = CapabilitySet(
            loaded=True,
            protocol_version=init.get("protocolVersion") or PROTOCOL_VERSION,
            server_info=init.get("serverInfo") or {},
            capabilities={k: v for k, v in child_caps.items() if k in MIRRORED_CAPABILITIES},
            instructions=init.get("instructions") or "",
        )
        if caps.has("tools"):
            caps.tools = await _list_all(client, "tools/list", "tools")
        if caps.has("resources"):
            caps.resources = await _list_all(client, "resources/list", "resources")
            try:
                caps.resource_templates = await _list_all(
                    client, "resources/templates/list", "resourceTemplates"
                )
            except ChildRpcError:
                caps.resource_templates = []
        if caps.has("prompts"):
            caps.prompts = await _list_all(client, "prompts/list", "prompts")
    finally:
        await client.close()

    name = caps.server_info.get("name", "?")
    version = caps.server_info.get("version", "?")
    logger.info(
        f"Introspected {name} v{version}: {len(caps.tools)} tools, "
        f"{len(caps.resources)} resources, {len(caps.prompts)} prompts"
    )
    return caps
