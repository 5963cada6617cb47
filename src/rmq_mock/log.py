"""Loguru configuration for the simulator.

The package disables its own logger on import so applications and test
suites stay quiet unless they opt in with :func:`setup_logging`. Records
emitted inside ``Session.with_channel`` carry the channel id.
"""

import json
import sys
from datetime import datetime, timezone

from loguru import logger

from rmq_mock.config import Settings, get_settings


def text_formatter(record: dict) -> str:
    """Human-readable formatter for development.

    Includes the channel id when available for easier debugging.
    """
    channel = record["extra"].get("channel")
    channel_str = f"[ch {channel}] " if channel is not None else ""

    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        f"<cyan>{channel_str}</cyan>"
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>\n"
    )


def format_json(record: dict) -> str:
    """Render a record as one JSON line."""
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "logger": record["name"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }

    for key, value in record["extra"].items():
        # Skip complex objects that can't be serialized
        try:
            json.dumps(value)
            log_entry[key] = value
        except (TypeError, ValueError):
            log_entry[key] = str(value)

    if record["exception"] is not None:
        log_entry["exception"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else None,
            "value": str(record["exception"].value) if record["exception"].value else None,
        }

    return json.dumps(log_entry)


def json_sink(message) -> None:
    """Custom sink that outputs JSON formatted logs."""
    sys.stderr.write(format_json(message.record) + "\n")
    sys.stderr.flush()


def setup_logging(settings: Settings | None = None) -> None:
    """Enable and configure logging for the ``rmq_mock`` package.

    Sets up output based on configuration:
    - JSON lines (LOG_FORMAT=json)
    - Human-readable coloured text (LOG_FORMAT=text)
    """
    settings = settings or get_settings()

    logger.remove()
    logger.enable("rmq_mock")

    if settings.log_format == "json":
        logger.add(
            json_sink,
            level=settings.log_level,
            backtrace=True,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            format=text_formatter,
            level=settings.log_level,
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            level=settings.log_level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            serialize=settings.log_format == "json",
            backtrace=True,
            diagnose=False,
        )

    logger.info(
        "Logging configured",
        level=settings.log_level,
        format=settings.log_format,
        log_file=settings.log_file,
    )
