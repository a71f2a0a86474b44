"""Stateless streamable-HTTP gateway: one child process per request."""

import asyncio
import json
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from tele_mcp.api.deps import get_context
from tele_mcp.core.context import BridgeContext
from tele_mcp.core.errors import (
    ProtocolValidationError,
    ResponseTimeoutError,
    TransportIOError,
)
from tele_mcp.core.logging import logger
from tele_mcp.schemas.messages import (
    RpcNotificationResponse,
    RpcResponse,
    classify,
    decode_line,
    is_client_response,
    is_json_line,
)
from tele_mcp.services.process import ChildProcess, ProcessManager
from tele_mcp.utils.sse import SSE_HEADERS, format_sse_event

PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
EVENT_STREAM = "text/event-stream"
JSON_TYPE = "application/json"

router = APIRouter()


# Origin is deliberately not validated: remote access from any origin is the
# point of the bridge.
@router.api_route("/mcp", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def mcp_endpoint(request: Request, ctx: BridgeContext = Depends(get_context)) -> Response:
    peer = request.client.host if request.client else "unknown"
    logger.info(f"New HTTP {request.method} request from {peer}")

    if not request.headers.get(PROTOCOL_VERSION_HEADER):
        raise ProtocolValidationError(f"Missing {PROTOCOL_VERSION_HEADER} header")

    accept = request.headers.get("accept", "")
    if request.method == "GET":
        if EVENT_STREAM not in accept:
            raise ProtocolValidationError(
                "Accept header must include text/event-stream for GET requests"
            )
        return await open_event_stream(ctx)

    if request.method != "POST":
        raise HTTPException(status_code=405, detail="Method not allowed", headers={"Allow": "GET, POST"})

    check_post_accept(accept, strict=ctx.settings.strict_accept)
    return await handle_post(request, ctx, streaming=EVENT_STREAM in accept)


def check_post_accept(accept: str, strict: bool) -> None:
    if strict and (JSON_TYPE not in accept or EVENT_STREAM not in accept):
        raise ProtocolValidationError(
            "Accept header must include both application/json and text/event-stream"
        )
    if JSON_TYPE not in accept:
        raise ProtocolValidationError("Accept header must include application/json")


async def handle_post(request: Request, ctx: BridgeContext, streaming: bool) -> Response:
    body = (await request.body()).strip()
    try:
        payload = json.loads(body)
    except ValueError:
        raise ProtocolValidationError("Invalid JSON")
    if not isinstance(payload, dict):
        raise ProtocolValidationError("Body must be a single JSON-RPC object")

    if is_client_response(payload):
        return Response(status_code=202)

    if b"\n" in body:
        # The child reads one message per line.
        body = json.dumps(payload, separators=(",", ":")).encode()

    process = await ctx.acquire_process()
    handed_off = False
    try:
        await process.write_line(body)
        if streaming:
            response = StreamingResponse(
                relay_until_response(process, ctx.processes),
                media_type=EVENT_STREAM,
                headers=SSE_HEADERS,
                background=BackgroundTask(ctx.processes.terminate, process),
            )
            handed_off = True
            return response
        try:
            return await asyncio.wait_for(
                read_final_response(process), timeout=ctx.settings.response_timeout_sec
            )
        except asyncio.TimeoutError:
            raise ResponseTimeoutError("Response timeout")
    finally:
        if not handed_off:
            await ctx.processes.terminate(process)


async def read_final_response(process: ChildProcess) -> Response:
    """Read child output until the line that answers the posted message."""
    while True:
        line = await process.read_line()
        if line is None:
            raise TransportIOError("Failed to read response: child closed its output")
        message = decode_line(line)
        if isinstance(message, RpcResponse):
            return Response(content=message.raw, media_type=JSON_TYPE)
        if isinstance(message, RpcNotificationResponse):
            return Response(status_code=202)
        # Server-initiated requests, notifications and malformed lines are
        # not answered here.


async def relay_until_response(process: ChildProcess, manager: ProcessManager) -> AsyncIterator[bytes]:
    try:
        while True:
            line = await process.read_line()
            if line is None:
                break
            text = line.decode("utf-8", errors="replace")
            try:
                payload = json.loads(text)
            except ValueError:
                continue
            yield format_sse_event(text)
            message = classify(payload, text)
            if isinstance(payload, dict) and "id" not in payload:
                break
            if isinstance(message, (RpcResponse, RpcNotificationResponse)):
                break
        yield format_sse_event("", event="done")
    except TransportIOError as exc:
        logger.warning(f"SSE relay from pid {process.pid} failed: {exc}")
        yield format_sse_event("", event="done")
    finally:
        await manager.terminate(process)


async def open_event_stream(ctx: BridgeContext) -> StreamingResponse:
    process = await ctx.processes.spawn(ctx.settings.mcp_command)
    return StreamingResponse(
        relay_forever(process, ctx.processes),
        media_type=EVENT_STREAM,
        headers=SSE_HEADERS,
        background=BackgroundTask(ctx.processes.terminate, process),
    )


async def relay_forever(process: ChildProcess, manager: ProcessManager) -> AsyncIterator[bytes]:
    """Relay every JSON line the child prints until it exits or the client leaves."""
    try:
        while True:
            line = await process.read_line()
            if line is None:
                break
            text = line.decode("utf-8", errors="replace")
            if is_json_line(text):
                yield format_sse_event(text)
    except TransportIOError as exc:
        logger.warning(f"SSE stream from pid {process.pid} failed: {exc}")
    finally:
        await manager.terminate(process)
