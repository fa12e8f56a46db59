"""
logging_config.py — Root logger setup driven by Settings.

Modules log through ``logging.getLogger(__name__)``; this only decides the
handler and the rendering (plain text, or JSON lines via structlog).
"""

from __future__ import annotations

import logging
from typing import Optional

import structlog

from config import Settings

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
            ],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(settings: Settings, stream: Optional[object] = None) -> None:
    """Install a single handler on the root logger (idempotent)."""
    handler: logging.Handler
    if settings.log_file:
        handler = logging.FileHandler(settings.log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream)
    handler.setFormatter(build_formatter(settings.log_format))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_quiz_ingest_handler", False):
            root.removeHandler(existing)
    handler._quiz_ingest_handler = True
    root.addHandler(handler)
    root.setLevel(settings.log_level)

    # asyncpg is chatty at DEBUG
    logging.getLogger("asyncpg").setLevel(max(logging.INFO, root.level))
