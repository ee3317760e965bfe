"""JSON-RPC 2.0 message types and newline-delimited framing.

Each frame on the wire is one compact JSON object followed by a single
``\\n``. Lines that are not brace-bounded are treated as stray output from
the server (banners, debug prints) and ignored rather than reported.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .errors import MalformedFrameError

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


@dataclass
class ErrorObject:
    """The ``error`` member of a failed response."""
    code: int
    message: str
    data: Optional[Any] = None
    # Set when a decoded frame carried an explicit "data": null.
    data_present: bool = field(default=False, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None or self.data_present:
            error["data"] = self.data
        return error


@dataclass
class Request:
    id: RequestId
    method: str
    params: Optional[dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            payload["params"] = self.params
        return payload


@dataclass
class Notification:
    method: str
    params: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


@dataclass
class Response:
    """A reply to a request; exactly one of ``result`` or ``error`` applies."""
    id: Optional[RequestId]
    result: Any = None
    error: Optional[ErrorObject] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        else:
            payload["result"] = self.result
        return payload


Message = Union[Request, Notification, Response]


def encode(message: Message) -> bytes:
    """Serialize a message into a single newline-terminated frame."""
    text = json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8") + b"\n"


def decode(frame: Union[str, bytes]) -> Optional[Message]:
    """Parse one frame.

    Returns:
        The decoded message, or None when the line is not protocol output.

    Raises:
        MalformedFrameError: If a brace-bounded line is not a valid message.
    """
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f"frame is not valid UTF-8: {e}") from e

    text = frame.strip()
    if not (text.startswith("{") and text.endswith("}")):
        return None

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedFrameError(f"invalid JSON: {e}", text) from e
    except RecursionError as e:
        raise MalformedFrameError("JSON nested too deeply", text) from e

    return _from_payload(payload, text)


def _is_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def _from_payload(payload: dict[str, Any], text: str) -> Message:
    method = payload.get("method")
    params = payload.get("params")

    if method is not None:
        if not isinstance(method, str):
            raise MalformedFrameError("method must be a string", text)
        if params is not None and not isinstance(params, dict):
            raise MalformedFrameError("params must be an object", text)
        if "id" not in payload:
            return Notification(method=method, params=params)
        if not _is_id(payload["id"]):
            raise MalformedFrameError("request id must be an integer or string", text)
        return Request(id=payload["id"], method=method, params=params)

    if "id" not in payload:
        raise MalformedFrameError("message has neither method nor id", text)

    msg_id = payload["id"]
    if msg_id is not None and not _is_id(msg_id):
        raise MalformedFrameError("response id must be an integer, string or null", text)

    if payload.get("error") is not None:
        error = payload["error"]
        if not isinstance(error, dict):
            raise MalformedFrameError("error must be an object", text)
        code = error.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            raise MalformedFrameError("error code must be an integer", text)
        return Response(
            id=msg_id,
            error=ErrorObject(
                code=code,
                message=str(error.get("message", "Unknown error")),
                data=error.get("data"),
                data_present="data" in error,
            ),
        )

    if "result" not in payload:
        raise MalformedFrameError("response has neither result nor error", text)
    return Response(id=msg_id, result=payload["result"])
