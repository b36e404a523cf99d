################################################################################
# DOCKVAULT
#
# @file:        logging.py
# @module:      dockvault.helpers.logging
# @description: Logger factory, structured JSON formatter and handler setup.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Phase transitions are logged with target/job_id/phase/outcome extras
# - RichHandler on interactive consoles, JSON lines everywhere else
# - Optional rotating file handler driven by the [logging] config section
################################################################################

"""
Logging setup for DockVault.

Modules obtain their logger via ``get_logger(__name__)`` and attach context
through ``extra={...}``. ``setup_logging`` is called once by the CLI.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .constants import LOG_DATE_FORMAT, LOG_EXTRA_FIELDS, LOG_FORMAT

ROOT_LOGGER_NAME = "dockvault"


def get_logger(name: str) -> logging.Logger:
    """Return a logger below the ``dockvault`` namespace."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class StructuredFormatter(logging.Formatter):
    """Formats records as single-line JSON including known context extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in LOG_EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends context extras as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = [
            f"{field}={getattr(record, field)}"
            for field in LOG_EXTRA_FIELDS
            if getattr(record, field, None) is not None
        ]
        if context:
            return f"{base} [{' '.join(context)}]"
        return base


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: Optional[bool] = None,
    max_size_mb: int = 100,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the ``dockvault`` logger hierarchy.

    Args:
        level: Log level name
        log_file: Optional path of a rotating log file
        json_format: Force JSON lines on stderr; ``None`` picks Rich on a tty
        max_size_mb: Rotation size for the log file
        backup_count: Number of rotated files to keep

    Returns:
        The configured root ``dockvault`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    if json_format is None:
        json_format = not sys.stderr.isatty()

    if json_format:
        console_handler: logging.Handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(ContextFormatter("%(message)s"))
    logger.addHandler(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(ContextFormatter(LOG_FORMAT, LOG_DATE_FORMAT))
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not create file handler for {log_file}: {e}")

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger
