import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def env_log_level(default: str = "INFO") -> str:
    """Return log level string from LOG_LEVEL env (fallback to ``default``)."""
    return os.getenv("LOG_LEVEL", default).upper()


def configure_logger(log_file: str = "matrikkel_sync.log", level: str | None = None):
    """
    Configure loguru for CLI runs: coloured stderr plus a rotating file under logs/.
    """
    level = level or env_log_level()
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> {extra}",
        level=level
    )

    logger.add(
        log_dir / log_file,
        rotation="10 MB",
        retention="10 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} {extra}",
        backtrace=True,
        diagnose=True
    )

    add_optional_sinks()


def add_optional_sinks() -> None:
    """``LOG_JSON`` ("1"/"true") adds a structured JSONL sink under logs/."""
    if os.getenv("LOG_JSON", "0").lower() in {"1", "true", "yes", "on"}:
        os.makedirs("logs", exist_ok=True)
        logger.add(
            "logs/matrikkel_sync_{time}.jsonl",
            level="DEBUG",
            serialize=True,
            backtrace=True,
            diagnose=True,
            enqueue=False,
        )


def bind_context(**kwargs: Any):
    """Return a logger with bound contextual fields (entity type, run id)."""
    return logger.bind(**{k: v for k, v in kwargs.items() if v is not None})
