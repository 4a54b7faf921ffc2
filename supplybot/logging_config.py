"""
logging_config.py — Centralized logging for Supply-Bot

Sets up Loguru as the single logging backend. Intercepts Python's stdlib
logging module so every logging.getLogger() call in the agents routes
through Loguru.

Rules:
- JSON lines in production for machine parsing
- Human-readable colour output in development
- Noisy third-party loggers are held at WARNING

Called by: supplybot/worker.py (on startup)
Depends on: supplybot/config.py (log_level, environment)
"""

import logging
import sys

from loguru import logger

from .config import settings


def setup_logging() -> None:
    """Configure Loguru and intercept stdlib logging.

    Call once at process startup, before the agents are built.
    """
    logger.remove()

    log_level = settings.log_level.upper()

    if settings.is_production:
        logger.add(
            sys.stdout,
            level=log_level,
            format="{message}",
            serialize=True,
        )
    else:
        logger.add(
            sys.stdout,
            level=log_level,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            colorize=True,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for noisy in ("httpx", "httpcore", "apscheduler", "sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging configured", level=log_level, production=settings.is_production)


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames from stdlib logging internals to find the real caller
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )
