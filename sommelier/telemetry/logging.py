from __future__ import annotations

import logging
from typing import Any

import structlog

_configured = False


def configure_logging(level: str = "INFO") -> None:
    global _configured
    if _configured:
        return

    logging.basicConfig(
        format="%(message)s",
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


def bind_turn(turn_id: str) -> None:
    """Attach the active turn id to every log line emitted from this context."""
    structlog.contextvars.bind_contextvars(turn_id=turn_id)


def clear_turn() -> None:
    structlog.contextvars.unbind_contextvars("turn_id")


__all__ = ["configure_logging", "get_logger", "bind_turn", "clear_turn"]
