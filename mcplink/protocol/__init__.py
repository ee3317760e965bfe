"""JSON-RPC over stdio: codec, pending calls, connection and session."""
from .codec import (
    ErrorObject,
    Message,
    Notification,
    Request,
    Response,
    decode,
    encode,
)
from .connection import StdioConnection
from .errors import (
    MalformedFrameError,
    McpError,
    ProtocolError,
    StateError,
    TransportError,
)
from .process import ServerProcess, open_server_session
from .registry import PendingCallRegistry
from .session import (
    CallToolResult,
    ClientOptions,
    ClientSession,
    InitializeResult,
    SessionState,
    ToolDescriptor,
)

__all__ = [
    # Wire types
    "ErrorObject",
    "Message",
    "Notification",
    "Request",
    "Response",
    "decode",
    "encode",
    # Errors
    "MalformedFrameError",
    "McpError",
    "ProtocolError",
    "StateError",
    "TransportError",
    # Runtime
    "PendingCallRegistry",
    "ServerProcess",
    "open_server_session",
    "StdioConnection",
    # Session
    "CallToolResult",
    "ClientOptions",
    "ClientSession",
    "InitializeResult",
    "SessionState",
    "ToolDescriptor",
]
