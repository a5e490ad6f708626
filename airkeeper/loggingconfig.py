# loggingconfig.py
"""
Airkeeper – Logging
===================
Colored or JSON log output plus an immutable LogContext that is threaded
through every call of the update pipeline.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
from typing import Any, Dict, MutableMapping, Optional, Tuple, Union

import colorlog

USE_JSON_LOGGING = os.getenv("AIRKEEPER_JSON_LOGS", "0").lower() in ("1", "true", "yes")

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

# names of every logger configured through setup_logging
_CONFIGURED: set[str] = set()


class JsonFormatter(logging.Formatter):
    """Formats log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_entry["stack_info"] = self.formatStack(record.stack_info)

        extra_data = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _STANDARD_ATTRS and not k.startswith("_")
        }
        extra_data.pop("context_tag", None)
        log_entry.update({k: v for k, v in extra_data.items() if v is not None})

        return json.dumps(log_entry, default=str)


def setup_logging(name: str, level: Union[int, str] = logging.INFO) -> logging.Logger:
    """
    Configures and returns a logger instance. Supports color or JSON format.

    Args:
        name (str): The name for the logger.
        level (int | str): The logging level (e.g., logging.DEBUG or "DEBUG").

    Returns:
        logging.Logger: The configured logger instance.
    """
    logger = logging.getLogger(name)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if logger.level == logging.NOTSET or level < logger.level:
        logger.setLevel(level)

    if not logger.handlers:
        if USE_JSON_LOGGING:
            handler = logging.StreamHandler(sys.stdout)
            formatter = JsonFormatter(datefmt="%Y-%m-%dT%H:%M:%S%z")
        else:
            handler = colorlog.StreamHandler(sys.stdout)
            formatter = colorlog.ColoredFormatter(
                "%(log_color)s[%(levelname)-8s] %(name)s: %(message)s%(reset)s",
                log_colors={
                    "DEBUG": "cyan",
                    "INFO": "green",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "red,bg_white",
                },
                style="%",
            )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.propagate = False

    _CONFIGURED.add(name)
    return logger


def set_global_level(level: Union[int, str]) -> None:
    """Apply ``level`` to every logger created by setup_logging."""
    for name in _CONFIGURED:
        logging.getLogger(name).setLevel(level.upper() if isinstance(level, str) else level)


# --------------------------------------------------------------------------- #
# structured context                                                          #
# --------------------------------------------------------------------------- #

_TAG_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("chain_id", "chain"),
    ("provider_name", "provider"),
    ("sponsor", "sponsor"),
    ("wallet_address", "wallet"),
    ("job_id", "job"),
)


@dataclasses.dataclass(frozen=True)
class LogContext:
    """Fields stamped onto every record of one pipeline branch."""

    coordinator_id: Optional[str] = None
    chain_id: Optional[str] = None
    provider_name: Optional[str] = None
    sponsor: Optional[str] = None
    wallet_address: Optional[str] = None
    job_id: Optional[str] = None

    def merge(self, **fields: Any) -> "LogContext":
        return dataclasses.replace(self, **fields)

    def as_extra(self) -> Dict[str, Any]:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}

    def tag(self) -> str:
        parts = []
        for attr, label in _TAG_FIELDS:
            value = getattr(self, attr)
            if value is None:
                continue
            if attr == "job_id" and len(value) > 12:
                value = f"{value[:8]}…{value[-4:]}"
            parts.append(f"{label}={value}")
        return f"[{' '.join(parts)}] " if parts else ""

    def bind(self, logger: logging.Logger) -> "ContextAdapter":
        return ContextAdapter(logger, self)


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges the bound LogContext into each record."""

    def __init__(self, logger: logging.Logger, context: LogContext) -> None:
        super().__init__(logger, context.as_extra())
        self.context = context

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"{self.context.tag()}{msg}", kwargs
