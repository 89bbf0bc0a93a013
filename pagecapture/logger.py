"""
Logging setup (loguru).
"""
import sys
from pathlib import Path

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[module]}</cyan> - <level>{message}</level>"
)


def setup_logger(level: str = "INFO", log_path: str | None = None, retention_days: int = 7):
    """Replace loguru's default sink with a stderr sink and an optional JSON file sink."""
    logger.remove()
    logger.configure(extra={"module": "pagecapture"})

    # stdout belongs to the host transport, console output goes to stderr
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT)

    if log_path:
        log_dir = Path(log_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "pagecapture_{time:YYYY-MM-DD}.log",
            level=level,
            rotation="00:00",
            retention=f"{retention_days} days",
            encoding="utf-8",
            serialize=True,
        )

    return logger
