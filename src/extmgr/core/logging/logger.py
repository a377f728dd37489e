"""Structured logger used across extmgr modules.

Modules create their logger once at import time::

    logger = get_logger(__name__)
    logger.warning("Failed to parse registry output", data={"error": str(exc)})

The ``data`` mapping is attached to the record and rendered after the message.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "extmgr"

LogLevel = Literal["debug", "info", "warning", "error"]

_configured = False


class LoggingConfig(BaseModel):
    level: LogLevel = "warning"
    show_path: bool = False
    enable_rich: bool = True

    model_config = ConfigDict(extra="ignore")


class _DataFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        data = getattr(record, "data", None)
        if data:
            return f"{message} {_render_data(data)}"
        return message


def _render_data(data: Any) -> str:
    try:
        return json.dumps(data, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(data)


class Logger:
    """Thin wrapper over :class:`logging.Logger` that accepts ``data=`` context."""

    def __init__(self, name: str) -> None:
        if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
            name = f"{ROOT_LOGGER_NAME}.{name}"
        self.name = name
        self._logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        message: str,
        *,
        data: dict[str, Any] | None = None,
        exc_info: Any = None,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, message, extra={"data": data}, exc_info=exc_info)

    def debug(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        self._log(logging.DEBUG, message, data=data)

    def info(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        self._log(logging.INFO, message, data=data)

    def warning(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        self._log(logging.WARNING, message, data=data)

    def error(
        self,
        message: str,
        *,
        data: dict[str, Any] | None = None,
        exc_info: Any = None,
    ) -> None:
        self._log(logging.ERROR, message, data=data, exc_info=exc_info)


def get_logger(name: str) -> Logger:
    return Logger(name)


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Install a single handler on the ``extmgr`` root logger."""
    global _configured
    resolved = config or LoggingConfig()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(resolved.level.upper())

    if _configured:
        return

    handler: logging.Handler
    if resolved.enable_rich:
        handler = RichHandler(
            show_path=resolved.show_path,
            show_time=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setFormatter(_DataFormatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(_DataFormatter("%(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)
    root.propagate = False
    _configured = True
