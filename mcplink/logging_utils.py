"""Loguru sink setup shared by the front ends."""
import sys
from pathlib import Path

from loguru import logger

_SINK_IDS: dict[str, int] = {}

CONSOLE_FORMAT = (
    "<dim>{time:HH:mm:ss.SSS}</dim> | <level>{level: <8}</level> | <level>{message}</level>"
)


def configure_logging(level: str = "INFO", enabled: bool = True) -> None:
    """Replace the default stderr sink and toggle mcplink's own logging."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT)
    if enabled:
        logger.enable("mcplink")
    else:
        logger.disable("mcplink")


def ensure_log_file(name: str, level: str = "DEBUG", log_dir: Path | None = None) -> Path:
    """Add a rotating file sink for ``name`` once; later calls reuse it."""
    directory = log_dir or Path.home() / ".mcplink" / "logs"
    log_path = directory / f"{name}.log"
    if name in _SINK_IDS:
        return log_path

    directory.mkdir(parents=True, exist_ok=True)
    _SINK_IDS[name] = logger.add(
        str(log_path),
        level=level,
        rotation="10 MB",
        retention="14 days",
        encoding="utf-8",
        backtrace=False,
        diagnose=False,
    )
    return log_path
