import time
from typing import Optional

from tele_mcp.core.config import BridgeSettings
from tele_mcp.core.logging import logger
from tele_mcp.services.capabilities import CapabilitySet, introspect
from tele_mcp.services.pool import ProcessPool
from tele_mcp.services.process import ChildProcess, ProcessManager
from tele_mcp.services.sessions import SessionManager
from tele_mcp.services.stdio_client import StdioRpcClient
from tele_mcp.utils.time import seconds_since


class BridgeContext:
    """Everything the routes share, built once per application.

    ``start`` runs in the app lifespan; ``close`` is safe to call twice.
    """

    def __init__(self, settings: BridgeSettings) -> None:
        self.settings = settings
        self.started_at = time.monotonic()
        self.processes = ProcessManager(
            grace_sec=settings.terminate_grace_sec,
            secondary_sec=settings.terminate_secondary_sec,
            stream_limit=settings.stream_limit_bytes,
        )
        self.pool = ProcessPool(
            self.processes,
            settings.mcp_command,
            settings.pool_size,
            settings.pool_maintenance_interval_sec,
        )
        self.sessions = SessionManager(self.open_session_client, durable=settings.durable_mode)
        self.capabilities = CapabilitySet()
        self._closed = False

    async def start(self) -> None:
        if self.settings.transport == "session":
            await self.load_capabilities()
        await self.pool.start()
        logger.info(
            f"Bridge ready: transport={self.settings.transport} "
            f"pool={self.pool.capacity} durable={self.settings.durable_mode}"
        )

    async def load_capabilities(self) -> Optional[CapabilitySet]:
        logger.info("Introspecting child MCP server...")
        try:
            self.capabilities = await introspect(
                self.processes, self.settings.mcp_command, self.settings.response_timeout_sec
            )
        except Exception as exc:
            logger.error(f"Failed to introspect child server: {exc}")
            return None
        return self.capabilities

    async def acquire_process(self) -> ChildProcess:
        """A warm process from the pool, or a cold start on a miss."""
        process = self.pool.get()
        if process is None:
            process = await self.processes.spawn(self.settings.mcp_command)
        return process

    async def open_session_client(self) -> StdioRpcClient:
        process = await self.acquire_process()
        client = StdioRpcClient(process, self.processes, self.settings.response_timeout_sec)
        try:
            await client.initialize()
        except BaseException:
            await client.close()
            raise
        return client

    def status(self) -> dict:
        return {
            "uptime_sec": seconds_since(self.started_at),
            "transport": self.settings.transport,
            "durable_mode": self.settings.durable_mode,
            "pool": {"capacity": self.pool.capacity, "idle": self.pool.idle_count},
            "sessions": len(self.sessions),
            "server": self.capabilities.server_info if self.capabilities.loaded else None,
        }

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.sessions.close()
        await self.pool.shutdown()
        logger.info("Bridge shut down")
