"""JSON-RPC 2.0 connection over a server subprocess's stdio.

The server speaks newline-delimited JSON on stdout, reads requests on
stdin and may write free-form diagnostics to stderr.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from .codec import ErrorObject, Message, Notification, Request, Response, decode, encode
from .errors import MalformedFrameError, ProtocolError, TransportError
from .registry import PendingCallRegistry

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

NotificationHandler = Callable[[Notification], Union[Awaitable[None], None]]
RequestHandler = Callable[[Request], Awaitable[Any]]
CloseCallback = Callable[[TransportError], None]


class StdioConnection:
    """Owns the pipes of one server process.

    Outbound frames are written under a lock so two concurrent sends never
    interleave. Inbound bytes are buffered and split on newlines; complete
    lines are dispatched one at a time in the order they arrived.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        stderr: Optional[asyncio.StreamReader] = None,
        wait_exit: Optional[Callable[[], Awaitable[Optional[int]]]] = None,
        read_size: int = 65536,
    ):
        self._reader = reader
        self._writer = writer
        self._stderr = stderr
        self._wait_exit = wait_exit
        self._read_size = read_size
        self._registry = PendingCallRegistry()
        self._buffer = bytearray()
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._close_reason: Optional[TransportError] = None
        self._closed_event = asyncio.Event()
        self._notification_handlers: list[NotificationHandler] = []
        self._request_handler: Optional[RequestHandler] = None
        self._close_callbacks: list[CloseCallback] = []
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._stderr_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_process(cls, process: asyncio.subprocess.Process) -> "StdioConnection":
        if process.stdout is None or process.stdin is None:
            raise TransportError("Server process was not started with stdio pipes")
        return cls(
            reader=process.stdout,
            writer=process.stdin,
            stderr=process.stderr,
            wait_exit=process.wait,
        )

    @property
    def registry(self) -> PendingCallRegistry:
        return self._registry

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> Optional[TransportError]:
        return self._close_reason

    def on_notification(self, handler: NotificationHandler) -> None:
        self._notification_handlers.append(handler)

    def set_request_handler(self, handler: Optional[RequestHandler]) -> None:
        """Handle requests initiated by the server.

        Without a handler they are answered with "Method not found".
        """
        self._request_handler = handler

    def on_close(self, callback: CloseCallback) -> None:
        if self._closed and self._close_reason is not None:
            callback(self._close_reason)
            return
        self._close_callbacks.append(callback)

    def start(self) -> None:
        """Begin reading the server's output streams."""
        if self._closed:
            raise TransportError("Connection is closed")
        if self._reader_task is not None:
            return

        self._reader_task = asyncio.create_task(self._read_loop())
        if self._stderr is not None:
            self._stderr_task = asyncio.create_task(self._stderr_loop())

    async def send(self, message: Message) -> None:
        """Write one frame to the server's stdin."""
        self._ensure_open()
        frame = encode(message)

        async with self._write_lock:
            self._ensure_open()
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(f"Failed to write to server: {e}") from e

        logger.debug("--> {}", frame.decode("utf-8").rstrip())

    async def feed_data(self, chunk: bytes) -> None:
        """Buffer raw stdout bytes and dispatch every complete line."""
        self._buffer.extend(chunk)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            await self._dispatch_line(line)

    async def close(self, reason: Optional[TransportError] = None) -> None:
        """Stop reading and fail whatever is still pending."""
        self._mark_closed(reason or TransportError("Connection closed"))

        current = asyncio.current_task()
        for task in (self._reader_task, self._stderr_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_closed(self) -> TransportError:
        await self._closed_event.wait()
        return self._close_reason or TransportError("Connection closed")

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransportError(str(self._close_reason or "Connection is closed"))

    async def _read_loop(self) -> None:
        reason: Optional[TransportError] = None
        try:
            while True:
                chunk = await self._reader.read(self._read_size)
                if not chunk:
                    break
                await self.feed_data(chunk)

            if self._buffer:
                # Last frame without a trailing newline.
                line = bytes(self._buffer)
                self._buffer.clear()
                await self._dispatch_line(line)

            reason = await self._exit_reason()
        except OSError as e:
            reason = TransportError(f"Failed to read from server: {e}")
        except Exception as e:
            logger.exception("Reader for server output failed")
            reason = TransportError(f"Reader for server output failed: {e}")
        finally:
            self._mark_closed(reason or TransportError("Connection closed"))

    async def _exit_reason(self) -> TransportError:
        if self._wait_exit is None:
            return TransportError("Server closed its output stream")
        try:
            code = await asyncio.wait_for(self._wait_exit(), timeout=1.0)
        except asyncio.TimeoutError:
            return TransportError("Server closed its output stream")
        return TransportError(f"Server process exited with code {code}")

    async def _stderr_loop(self) -> None:
        stderr = self._stderr
        if stderr is None:
            return
        while True:
            try:
                line = await stderr.readline()
            except ValueError as e:
                # readline() already discarded the overlong line.
                logger.warning("Skipped overlong stderr line from server: {}", e)
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.info("[server] {}", text)

    async def _dispatch_line(self, line: bytes) -> None:
        try:
            message = decode(line)
        except MalformedFrameError as e:
            logger.warning("Dropping malformed frame: {} ({!r})", e, e.frame[:200])
            return

        if message is None:
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug("[server stdout] {}", text)
            return

        logger.debug("<-- {}", line.decode("utf-8", errors="replace").strip())

        if isinstance(message, Response):
            self._registry.resolve(message)
        elif isinstance(message, Notification):
            await self._dispatch_notification(message)
        else:
            await self._dispatch_request(message)

    async def _dispatch_notification(self, notification: Notification) -> None:
        for handler in list(self._notification_handlers):
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Notification handler failed for {}", notification.method)

    async def _dispatch_request(self, request: Request) -> None:
        if self._request_handler is None:
            logger.warning("Server request {} is not supported", request.method)
            response = Response(
                id=request.id,
                error=ErrorObject(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )
        else:
            try:
                response = Response(id=request.id, result=await self._request_handler(request))
            except ProtocolError as e:
                response = Response(
                    id=request.id,
                    error=ErrorObject(code=e.code, message=e.message, data=e.data),
                )
            except Exception as e:
                logger.exception("Server request handler failed for {}", request.method)
                response = Response(
                    id=request.id,
                    error=ErrorObject(code=INTERNAL_ERROR, message=str(e) or "Internal error"),
                )

        try:
            await self.send(response)
        except TransportError as e:
            logger.warning("Could not answer server request {}: {}", request.method, e)

    def _mark_closed(self, reason: TransportError) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason

        drained = self._registry.drain_all(reason)
        logger.info("Connection closed: {} ({} pending call(s) failed)", reason, drained)
        self._closed_event.set()

        callbacks = self._close_callbacks
        self._close_callbacks = []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Close callback failed")
