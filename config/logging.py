# coding: utf-8
"""
Logging configuration with loguru for the relay metering backend
"""
import sys
from pathlib import Path
from loguru import logger
import sentry_sdk

from config.config import LOG_LEVEL, ENVIRONMENT, SENTRY_DSN


def setup_logging() -> None:
    """
    Setup loguru logging configuration
    """
    # Remove default handler
    logger.remove()

    # Create logs directory
    logs_dir = Path(__file__).parent.parent / 'logs'
    logs_dir.mkdir(exist_ok=True)

    # Console output with colors and formatting
    logger.add(
        sys.stdout,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=LOG_LEVEL,
        colorize=True,
    )

    # File output - all logs
    logger.add(
        logs_dir / "relay_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}",
        level="DEBUG",
        rotation="00:00",  # Rotate at midnight
        retention="7 days",
        compression="zip",
        encoding="utf-8",
    )

    # File output - errors only
    logger.add(
        logs_dir / "error_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}",
        level="ERROR",
        rotation="00:00",
        retention="30 days",  # Keep error logs longer
        compression="zip",
        encoding="utf-8",
    )

    # Sentry integration - send ERROR and CRITICAL to Sentry
    if SENTRY_DSN:
        logger.add(
            sentry_sink,
            level="ERROR",
            format="{message}",
        )

    # Suppress noisy third-party loggers
    import logging
    logging.getLogger('sqlalchemy.engine').setLevel(logging.ERROR)  # Only errors
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

    logger.info(f"Relay backend initialized | Environment: {ENVIRONMENT} | Log level: {LOG_LEVEL}")


def sentry_sink(message):
    """
    Custom sink to send ERROR and CRITICAL logs to Sentry
    """
    record = message.record
    level = record["level"].name

    extras = {
        "function": record["function"],
        "file": record["file"].path,
        "line": record["line"],
    }

    if level == "ERROR":
        sentry_sdk.capture_message(record["message"], level="error", extras=extras)
    elif level == "CRITICAL":
        sentry_sdk.capture_message(record["message"], level="fatal", extras=extras)

    # If there's an exception, send it to Sentry
    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"])
