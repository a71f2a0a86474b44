import subprocess
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tele_mcp import __version__
from tele_mcp.api import gateway, health, status, ws
from tele_mcp.api.sessions import SessionGateway
from tele_mcp.core.config import BridgeSettings, load_settings
from tele_mcp.core.context import BridgeContext
from tele_mcp.core.errors import BridgeError
from tele_mcp.core.logging import logger


def create_app(settings: Optional[BridgeSettings] = None) -> FastAPI:
    settings = settings or load_settings()
    session_gateway = SessionGateway() if settings.transport == "session" else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            ctx = BridgeContext(settings)
            app.state.context = ctx
            stack.push_async_callback(ctx.close)
            await ctx.start()
            if session_gateway is not None:
                await stack.enter_async_context(session_gateway.run(ctx))
            yield

    app = FastAPI(title="tele-mcp", version=__version__, lifespan=lifespan)

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    app.include_router(health.router)
    app.include_router(status.router)
    if settings.transport == "websocket":
        app.include_router(ws.router)
    elif settings.transport == "http":
        app.include_router(gateway.router)
    else:
        app.add_route("/mcp", session_gateway, include_in_schema=False)
    return app


def run_boot_command(command: str) -> None:
    logger.info(f"Running boot command: {command}")
    result = subprocess.run(command, shell=True)
    if result.returncode != 0:
        raise SystemExit(f"Boot command failed with exit code {result.returncode}")
    logger.info("Boot command completed successfully")


def run() -> None:
    import uvicorn

    settings = load_settings()
    if not settings.mcp_command:
        raise SystemExit("MCP_COMMAND environment variable is required")
    if settings.boot_command:
        run_boot_command(settings.boot_command)

    logger.info(
        f"Starting MCP bridge on {settings.host}:{settings.port} "
        f"(transport: {settings.transport}, durable mode: {settings.durable_mode})"
    )
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
