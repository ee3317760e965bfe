"""Fixtures that stand in for a server subprocess's pipes."""
import asyncio
import json
from typing import Any, Optional

import pytest
import pytest_asyncio

from mcplink.protocol.connection import StdioConnection
from mcplink.protocol.session import ClientSession


class FakeStdin:
    """Collects everything the client writes to the server."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.broken = False
        self.drains = 0

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("Broken pipe")
        self.buffer.extend(data)

    async def drain(self) -> None:
        self.drains += 1
        await asyncio.sleep(0)

    @property
    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in bytes(self.buffer).splitlines() if line]


class ServerPipes:
    """Both ends of a pretend server: we feed stdout, we read stdin."""

    def __init__(self) -> None:
        self.stdout = asyncio.StreamReader()
        self.stdin = FakeStdin()
        self.exit_code: Optional[int] = None

    async def wait_exit(self) -> Optional[int]:
        return self.exit_code

    def reply(self, payload: dict[str, Any]) -> None:
        self.stdout.feed_data((json.dumps(payload) + "\n").encode("utf-8"))

    def write_raw(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def exit(self, code: int = 0) -> None:
        self.exit_code = code
        self.stdout.feed_eof()

    async def next_frame(self, index: int, timeout: float = 1.0) -> dict[str, Any]:
        """Wait until the client has written at least ``index + 1`` frames."""
        async def _poll() -> dict[str, Any]:
            while len(self.stdin.frames) <= index:
                await asyncio.sleep(0)
            return self.stdin.frames[index]

        return await asyncio.wait_for(_poll(), timeout=timeout)


INIT_RESULT = {
    "protocolVersion": "2024-11-05",
    "capabilities": {},
    "serverInfo": {"name": "x", "version": "1"},
}


async def complete_handshake(session: ClientSession, connection: StdioConnection, pipes: ServerPipes):
    task = asyncio.create_task(session.connect(connection))
    request = await pipes.next_frame(0)
    pipes.reply({"jsonrpc": "2.0", "id": request["id"], "result": INIT_RESULT})
    return await task


@pytest_asyncio.fixture
async def pipes():
    return ServerPipes()


@pytest_asyncio.fixture
async def connection(pipes):
    conn = StdioConnection(pipes.stdout, pipes.stdin, wait_exit=pipes.wait_exit)
    yield conn
    await conn.close()


@pytest.fixture
def handshake(connection, pipes):
    async def _run(session: ClientSession):
        return await complete_handshake(session, connection, pipes)
    return _run


@pytest_asyncio.fixture
async def ready_session(handshake):
    session = ClientSession()
    await handshake(session)
    return session
