import asyncio
import codecs
from contextlib import suppress
from typing import Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from tele_mcp.core.errors import TransportIOError
from tele_mcp.core.logging import logger
from tele_mcp.services.process import ChildProcess, ProcessManager

READ_CHUNK_SIZE = 4096


class TransportBridge:
    """Pumps bytes between one WebSocket and the child process it owns.

    No request/response correlation happens here: the connection owns the
    process exclusively, so everything the child prints belongs to it.
    """

    def __init__(self, websocket: WebSocket, process: ChildProcess, manager: ProcessManager) -> None:
        self.websocket = websocket
        self.process = process
        self.manager = manager
        self.done = asyncio.Event()
        self.inbound_task: Optional[asyncio.Task] = None
        self.outbound_task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        self.inbound_task = asyncio.create_task(self._pipe_websocket_to_stdin())
        self.outbound_task = asyncio.create_task(self._pipe_stdout_to_websocket())
        try:
            await asyncio.wait(
                {self.inbound_task, self.outbound_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await self.cleanup()

    async def _pipe_websocket_to_stdin(self) -> None:
        while True:
            try:
                message = await self.websocket.receive()
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.info(f"WebSocket read ended: {exc!r}")
                return
            if message["type"] == "websocket.disconnect":
                return
            text = message.get("text")
            if text is None:
                continue
            try:
                await self.process.write_line(text.encode("utf-8"))
            except TransportIOError as exc:
                logger.warning(f"Write to stdin error: {exc}")
                return

    async def _pipe_stdout_to_websocket(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = await self.process.stdout.read(READ_CHUNK_SIZE)
            except OSError as exc:
                logger.warning(f"Read from stdout error: {exc}")
                return
            if not chunk:
                return
            text = decoder.decode(chunk)
            if not text:
                continue
            try:
                await self.websocket.send_text(text)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.warning(f"WebSocket write error: {exc!r}")
                return

    async def cleanup(self) -> None:
        if self.done.is_set():
            return
        self.done.set()
        await self.manager.terminate(self.process)
        with suppress(WebSocketDisconnect, RuntimeError, OSError):
            await self.websocket.close()
        pending = [t for t in (self.inbound_task, self.outbound_task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
