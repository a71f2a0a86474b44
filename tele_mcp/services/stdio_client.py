"""JSON-RPC client over one child's stdin/stdout.

Used where the gateway itself talks to a child (session-bound processes and
startup introspection) rather than relaying bytes verbatim.
"""

import asyncio
import itertools
import json
from contextlib import suppress
from typing import Any, Dict, Optional

from tele_mcp import __version__
from tele_mcp.core.errors import ChildRpcError, TransportIOError, transport_error
from tele_mcp.core.logging import logger
from tele_mcp.schemas.messages import (
    RpcNotification,
    RpcRequest,
    RpcResponse,
    decode_line,
)
from tele_mcp.services.process import ChildProcess, ProcessManager

PROTOCOL_VERSION = "2024-11-05"


class StdioRpcClient:
    def __init__(
        self,
        process: ChildProcess,
        manager: ProcessManager,
        request_timeout_sec: float = 30.0,
        client_name: str = "tele-mcp-bridge",
    ) -> None:
        self.process = process
        self.manager = manager
        self.request_timeout_sec = request_timeout_sec
        self.client_name = client_name
        self.initialize_result: Dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._closed_reason: Optional[str] = None
        self._reader = asyncio.create_task(self._read_loop())

    @property
    def alive(self) -> bool:
        return self._closed_reason is None and self.process.alive

    async def initialize(self) -> Dict[str, Any]:
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": __version__},
            },
        )
        await self.notify("notifications/initialized")
        self.initialize_result = result or {}
        return self.initialize_result

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self._closed_reason is not None:
            raise transport_error(self._closed_reason)
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=self.request_timeout_sec)
        except asyncio.TimeoutError as exc:
            raise TransportIOError(
                f"i/o timeout waiting for {method} response from pid {self.process.pid}"
            ) from exc
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _send(self, message: Dict[str, Any]) -> None:
        data = json.dumps(message, separators=(",", ":")).encode()
        async with self._write_lock:
            await self.process.write_line(data)

    async def _read_loop(self) -> None:
        reason = f"EOF: pid {self.process.pid} closed its output"
        try:
            while True:
                line = await self.process.read_line()
                if line is None:
                    break
                message = decode_line(line)
                if isinstance(message, RpcResponse):
                    self._resolve(message)
                elif isinstance(message, RpcRequest):
                    # Server-initiated requests (sampling, roots) are not
                    # supported by the bridge; answer so the child does not hang.
                    await self._send(
                        {
                            "jsonrpc": "2.0",
                            "id": message.id,
                            "error": {"code": -32601, "message": "Method not found"},
                        }
                    )
                elif isinstance(message, RpcNotification):
                    logger.debug(f"[pid {self.process.pid}] notification {message.method}")
        except TransportIOError as exc:
            reason = str(exc)
        finally:
            await self._fail_pending(reason)

    def _resolve(self, message: RpcResponse) -> None:
        future = self._pending.get(message.id) if isinstance(message.id, int) else None
        if future is None or future.done():
            logger.debug(f"[pid {self.process.pid}] unmatched response id {message.id!r}")
            return
        if message.error is not None:
            future.set_exception(ChildRpcError(message.error))
        else:
            future.set_result(message.result)

    async def _fail_pending(self, reason: str) -> None:
        if self._closed_reason is None:
            code = self.process.returncode
            if code is None:
                with suppress(asyncio.TimeoutError):
                    code = await asyncio.wait_for(self.process.proc.wait(), timeout=0.2)
            if code is not None:
                reason = f"{reason} (process exited with code {code})"
            self._closed_reason = reason
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(transport_error(self._closed_reason))

    async def close(self) -> None:
        await self.manager.terminate(self.process)
        if not self._reader.done():
            self._reader.cancel()
        with suppress(asyncio.CancelledError):
            await self._reader
