"""HTTP front end: exposes one stdio MCP server's tools over REST."""
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from mcplink import __version__
from mcplink.config import Settings
from mcplink.protocol import (
    ClientSession,
    McpError,
    ProtocolError,
    TransportError,
    open_server_session,
)


class ToolCallBody(BaseModel):
    arguments: dict[str, Any] = Field(default_factory=dict)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the configured server for the lifetime of the app."""
    settings: Settings = app.state.settings
    app.state.session = None

    async with AsyncExitStack() as stack:
        if settings.server_command:
            try:
                app.state.session = await stack.enter_async_context(open_server_session(
                    settings.server_command,
                    working_dir=settings.working_dir,
                    timeout=settings.request_timeout,
                ))
            except (McpError, asyncio.TimeoutError) as e:
                logger.error("Could not start MCP server: {}", str(e) or "handshake timed out")
        else:
            logger.warning("MCPLINK_SERVER_COMMAND is not set; no server will be started")
        yield

    app.state.session = None


def _ready_session(request: Request) -> ClientSession:
    session: Optional[ClientSession] = request.app.state.session
    if session is None or not session.is_ready:
        raise HTTPException(status_code=503, detail="MCP session is not ready")
    return session


async def _bounded(request: Request, coro: Any) -> Any:
    settings: Settings = request.app.state.settings
    try:
        return await asyncio.wait_for(coro, timeout=settings.request_timeout)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="MCP server did not respond in time")
    except ProtocolError as e:
        raise HTTPException(
            status_code=502,
            detail={"code": e.code, "message": e.message, "data": e.data},
        )
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))


def _settings_from_env() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        logger.error("Invalid configuration, falling back to defaults: {}", e)
        return Settings()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(title="mcplink", version=__version__, lifespan=lifespan)
    app.state.settings = settings or _settings_from_env()
    app.state.session = None

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        session: Optional[ClientSession] = request.app.state.session
        return {
            "status": "ok",
            "session": session.state.value if session else "disconnected",
        }

    @app.get("/api/tools")
    async def list_tools(request: Request):
        """List the tools exposed by the server."""
        session = _ready_session(request)
        tools = await _bounded(request, session.list_tools())
        return {"tools": [tool.to_dict() for tool in tools]}

    @app.post("/api/tools/{name}")
    async def call_tool(name: str, body: ToolCallBody, request: Request):
        """Call one tool with the given arguments."""
        session = _ready_session(request)
        result = await _bounded(request, session.call_tool(name, body.arguments))
        return result.to_dict()

    return app


app = create_app()
