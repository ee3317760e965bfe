"""Server subprocess lifecycle."""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from loguru import logger

from .connection import StdioConnection
from .errors import TransportError
from .session import ClientOptions, ClientSession


class ServerProcess:
    """Spawns an MCP server with piped stdio and tears it down again."""

    def __init__(
        self,
        command: list[str],
        working_dir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        if not command:
            raise ValueError("Server command must not be empty")
        self._command = command
        self._working_dir = working_dir
        self._env = env
        self._process: Optional[asyncio.subprocess.Process] = None
        self._exit_code: Optional[int] = None

    @property
    def command(self) -> list[str]:
        return self._command

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else self._exit_code

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> StdioConnection:
        """Start the subprocess and return a connection over its pipes."""
        if self._process is not None:
            raise TransportError("Server process already started")

        env = None
        if self._env:
            env = os.environ.copy()
            env.update(self._env)

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._working_dir,
                env=env,
            )
        except OSError as e:
            raise TransportError(f"Failed to start server {self._command[0]!r}: {e}") from e

        logger.info("Started server process {} (pid {})", self._command[0], self._process.pid)
        return StdioConnection.from_process(self._process)

    async def stop(self, timeout: float = 5.0) -> Optional[int]:
        """Terminate the subprocess, killing it if it does not exit in time."""
        process = self._process
        if process is None:
            return None

        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Server process {} did not exit, killing it", process.pid)
                process.kill()
                await process.wait()
            except ProcessLookupError:
                await process.wait()

        logger.info("MCP server process exited with code {}", process.returncode)
        self._process = None
        self._exit_code = process.returncode
        return process.returncode


@asynccontextmanager
async def open_server_session(
    command: list[str],
    working_dir: Optional[str] = None,
    options: Optional[ClientOptions] = None,
    timeout: Optional[float] = None,
    env: Optional[dict[str, str]] = None,
) -> AsyncIterator[ClientSession]:
    """Start a server, complete the handshake, and clean both up on exit.

    ``timeout`` bounds the handshake only.
    """
    server = ServerProcess(command, working_dir=working_dir, env=env)
    session = ClientSession(options)
    try:
        connection = await server.start()
        await asyncio.wait_for(session.connect(connection), timeout=timeout)
        yield session
    finally:
        await session.disconnect()
        await server.stop()
