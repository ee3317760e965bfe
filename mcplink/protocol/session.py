"""Client session: handshake state machine and request/notification API."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from loguru import logger

from mcplink import __version__

from .codec import Notification, Request
from .connection import StdioConnection
from .errors import StateError, TransportError

DEFAULT_PROTOCOL_VERSION = "2024-11-05"
BOOTSTRAP_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"


class SessionState(str, Enum):
    """Lifecycle of a client session."""
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"


def _default_capabilities() -> dict[str, Any]:
    return {"roots": {"listChanged": True}, "sampling": {}}


@dataclass
class ClientOptions:
    """What the client announces about itself during ``initialize``."""
    client_name: str = "mcplink"
    client_version: str = __version__
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    capabilities: dict[str, Any] = field(default_factory=_default_capabilities)

    def initialize_params(self) -> dict[str, Any]:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "clientInfo": {
                "name": self.client_name,
                "version": self.client_version,
            },
        }


@dataclass
class InitializeResult:
    """Server's answer to ``initialize``. Informational only."""
    protocol_version: Optional[str] = None
    capabilities: dict[str, Any] = field(default_factory=dict)
    server_info: dict[str, Any] = field(default_factory=dict)
    instructions: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "InitializeResult":
        data = raw if isinstance(raw, dict) else {}
        capabilities = data.get("capabilities")
        server_info = data.get("serverInfo")
        return cls(
            protocol_version=data.get("protocolVersion"),
            capabilities=capabilities if isinstance(capabilities, dict) else {},
            server_info=server_info if isinstance(server_info, dict) else {},
            instructions=data.get("instructions"),
        )


@dataclass
class ToolDescriptor:
    """One entry of a ``tools/list`` result."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ToolDescriptor":
        schema = raw.get("inputSchema")
        return cls(
            name=str(raw.get("name") or ""),
            description=str(raw.get("description") or ""),
            input_schema=schema if isinstance(schema, dict) else {"type": "object", "properties": {}},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class CallToolResult:
    """Result of ``tools/call``."""
    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_dict(cls, raw: Any) -> "CallToolResult":
        data = raw if isinstance(raw, dict) else {}
        content = data.get("content")
        return cls(
            content=[block for block in content if isinstance(block, dict)]
            if isinstance(content, list)
            else [],
            is_error=bool(data.get("isError", False)),
        )

    @property
    def text(self) -> str:
        """Concatenated text of every ``text`` content block."""
        return "\n".join(
            str(block.get("text", ""))
            for block in self.content
            if block.get("type") == "text"
        )

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}


class ClientSession:
    """Drives one server connection through the initialize handshake.

    Application calls are only accepted once the session is READY. Each
    session owns its own id counter; the pending-call registry belongs to
    the connection it is attached to.
    """

    def __init__(self, options: Optional[ClientOptions] = None):
        self._options = options or ClientOptions()
        self._state = SessionState.DISCONNECTED
        self._connection: Optional[StdioConnection] = None
        self._last_request_id = 0
        self._init_result: Optional[InitializeResult] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def connection(self) -> Optional[StdioConnection]:
        return self._connection

    @property
    def protocol_version(self) -> Optional[str]:
        return self._init_result.protocol_version if self._init_result else None

    @property
    def server_info(self) -> dict[str, Any]:
        return self._init_result.server_info if self._init_result else {}

    @property
    def server_capabilities(self) -> dict[str, Any]:
        return self._init_result.capabilities if self._init_result else {}

    @property
    def instructions(self) -> Optional[str]:
        return self._init_result.instructions if self._init_result else None

    async def connect(self, connection: StdioConnection) -> InitializeResult:
        """Attach to ``connection`` and perform the initialize handshake."""
        if self._state is not SessionState.DISCONNECTED:
            raise StateError(f"Cannot connect: session is {self._state.value}")

        logger.info("Connecting to MCP server...")
        self._connection = connection
        self._state = SessionState.HANDSHAKING
        connection.on_close(self._handle_connection_closed)

        try:
            connection.start()
            raw = await self.call(BOOTSTRAP_METHOD, self._options.initialize_params())
        except Exception as e:
            logger.error("Initialization failed: {}", e)
            self._state = SessionState.CLOSED
            await connection.close(TransportError("Initialization failed"))
            raise

        result = InitializeResult.from_dict(raw)
        self._init_result = result
        self._log_server(result)

        await self.notify(INITIALIZED_NOTIFICATION)
        if connection.closed:
            self._state = SessionState.CLOSED
            raise TransportError(str(connection.close_reason))

        self._state = SessionState.READY
        return result

    async def call(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            StateError: If the session does not accept ``method`` right now.
            ProtocolError: If the server answers with an error.
            TransportError: If the connection closes before the answer.
        """
        connection = self._require_connection(method)

        self._last_request_id += 1
        request_id = self._last_request_id
        future = connection.registry.register(request_id)

        try:
            await connection.send(Request(
                id=request_id,
                method=method,
                params=params if params is not None else {},
            ))
            logger.debug("Sent {} request (id={})", method, request_id)
            return await future
        finally:
            # No-op once resolved; clears the entry on send failure or cancellation.
            connection.registry.discard(request_id)
            if not future.done():
                future.cancel()

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        """Send a notification. Never raises; problems are logged."""
        connection = self._connection
        if self._state is SessionState.DISCONNECTED or connection is None:
            logger.warning("Cannot send {} notification: not connected to a server", method)
            return
        if connection.closed:
            logger.warning("Cannot send {} notification: connection is closed", method)
            return

        try:
            await connection.send(Notification(method=method, params=params))
        except TransportError as e:
            logger.warning("Failed to send {} notification: {}", method, e)

    async def list_tools(self) -> list[ToolDescriptor]:
        result = await self.call("tools/list", {})
        raw_tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(raw_tools, list):
            return []
        return [ToolDescriptor.from_dict(tool) for tool in raw_tools if isinstance(tool, dict)]

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
    ) -> CallToolResult:
        result = await self.call("tools/call", {"name": name, "arguments": arguments or {}})
        return CallToolResult.from_dict(result)

    async def disconnect(self) -> None:
        """Close the connection. The server process itself is left alone."""
        if self._connection is None:
            return

        logger.info("Disconnecting from MCP server...")
        self._state = SessionState.CLOSED
        await self._connection.close(TransportError("Session disconnected"))

    def _require_connection(self, method: str) -> StdioConnection:
        allowed = self._state is SessionState.READY or (
            self._state is SessionState.HANDSHAKING and method == BOOTSTRAP_METHOD
        )
        if not allowed or self._connection is None:
            raise StateError(f"Cannot call {method!r}: session is {self._state.value}")
        return self._connection

    def _handle_connection_closed(self, reason: TransportError) -> None:
        if self._state is not SessionState.CLOSED:
            logger.info("Session closed: {}", reason)
        self._state = SessionState.CLOSED

    @staticmethod
    def _log_server(result: InitializeResult) -> None:
        logger.info(
            "MCP initialization successful: protocol {}",
            result.protocol_version or "not specified",
        )
        for capability, value in result.capabilities.items():
            logger.debug("Server capability {}: {}", capability, value)
        if result.server_info:
            logger.info(
                "Server: {} {}",
                result.server_info.get("name", "unknown"),
                result.server_info.get("version", ""),
            )
