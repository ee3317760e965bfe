"""Bookkeeping for requests that are still waiting on a response."""
import asyncio
from typing import Any

from loguru import logger

from .codec import RequestId, Response
from .errors import ProtocolError, TransportError


class PendingCallRegistry:
    """Maps in-flight request ids to the futures awaiting their responses.

    Only the event loop that owns the connection touches the registry, so
    registration and resolution never race each other.
    """

    def __init__(self) -> None:
        self._pending: dict[RequestId, asyncio.Future[Any]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    @property
    def pending_ids(self) -> list[RequestId]:
        return list(self._pending)

    def register(self, request_id: RequestId) -> asyncio.Future[Any]:
        """Create and store the future for a request about to be sent."""
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id} is already pending")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return future

    def discard(self, request_id: RequestId) -> None:
        """Forget a request without resolving it."""
        self._pending.pop(request_id, None)

    def resolve(self, response: Response) -> bool:
        """Complete the future matching ``response.id``.

        Returns:
            True if a waiting caller received the response, False if it
            was dropped.
        """
        future = self._pending.pop(response.id, None) if response.id is not None else None
        if future is None:
            logger.warning("Dropping response for unknown request id {}", response.id)
            return False

        if future.done():
            # Caller gave up (e.g. timed out) before the response arrived.
            logger.debug("Request {} was already settled, ignoring response", response.id)
            return False

        if response.error is not None:
            future.set_exception(ProtocolError(
                code=response.error.code,
                message=response.error.message,
                data=response.error.data,
            ))
        else:
            future.set_result(response.result)
        return True

    def drain_all(self, reason: Exception) -> int:
        """Fail every pending call and empty the registry.

        Each caller gets its own TransportError chained to ``reason``.
        """
        pending = self._pending
        self._pending = {}

        drained = 0
        for request_id, future in pending.items():
            if not future.done():
                error = TransportError(str(reason))
                error.__cause__ = reason
                future.set_exception(error)
                drained += 1
            logger.debug("Drained pending request {}: {}", request_id, reason)
        return drained
