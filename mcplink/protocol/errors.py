"""Error taxonomy for the stdio JSON-RPC client."""
from dataclasses import dataclass
from typing import Any, Optional


class McpError(Exception):
    """Base class for every error raised by mcplink."""


class TransportError(McpError):
    """The connection is closed, absent, or the server process exited."""


class StateError(McpError):
    """An operation was attempted in a session state that forbids it."""


class MalformedFrameError(McpError):
    """An inbound frame could not be parsed as a JSON-RPC message."""

    def __init__(self, message: str, frame: str = ""):
        super().__init__(message)
        self.frame = frame


@dataclass
class ProtocolError(McpError):
    """JSON-RPC error response."""
    code: int
    message: str
    data: Optional[Any] = None

    def __str__(self) -> str:
        return f"Request failed: {self.message} ({self.code})"
