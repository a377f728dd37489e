"""Logging helpers for extmgr."""

from extmgr.core.logging.logger import LoggingConfig, configure_logging, get_logger

__all__ = ["LoggingConfig", "configure_logging", "get_logger"]
