"""Runtime settings for the command line and HTTP front ends."""
import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping, Optional

ENV_PREFIX = "MCPLINK_"


@dataclass
class Settings:
    """Which server to run and how long to wait on it.

    The protocol layer itself never times out a call; front ends wrap
    calls in ``request_timeout``.
    """
    server_command: list[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    request_timeout: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``MCPLINK_*`` environment variables.

        Raises:
            ValueError: If MCPLINK_REQUEST_TIMEOUT is not a positive number
        """
        env = os.environ if environ is None else environ

        settings = cls()
        command = env.get(f"{ENV_PREFIX}SERVER_COMMAND", "").strip()
        if command:
            settings.server_command = shlex.split(command)

        settings.working_dir = env.get(f"{ENV_PREFIX}WORKING_DIR") or None

        timeout = env.get(f"{ENV_PREFIX}REQUEST_TIMEOUT")
        if timeout:
            try:
                settings.request_timeout = float(timeout)
            except ValueError:
                raise ValueError(
                    f"{ENV_PREFIX}REQUEST_TIMEOUT must be a number, got {timeout!r}"
                )
            if settings.request_timeout <= 0:
                raise ValueError(f"{ENV_PREFIX}REQUEST_TIMEOUT must be positive")

        settings.log_level = env.get(f"{ENV_PREFIX}LOG_LEVEL", settings.log_level).upper()
        return settings
