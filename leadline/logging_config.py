"""
Structured logging for the server, CLI and reminder worker.

structlog events are handed to stdlib logging, so one set of handlers serves
both our events and third-party loggers (uvicorn, httpx, aiosqlite).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

LOG_FILE_NAME = "leadline.jsonl"
_HANDLER_PREFIX = "leadline."

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _formatter(renderer) -> structlog.stdlib.ProcessorFormatter:
    processors = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if isinstance(renderer, structlog.processors.JSONRenderer):
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=_SHARED_PROCESSORS, processors=processors)


def setup_logging(log_dir: Path, json_logs: bool = True, level: int = logging.INFO) -> Path:
    """
    Configure structlog + stdlib logging. Safe to call more than once.

    Parameters
    ----------
    log_dir : Path
        Directory for log files.
    json_logs : bool
        If True, the console prints JSON and every event is also appended as
        one JSON line to ``log_dir/leadline.jsonl``. If False, the console
        is human-readable and no file is written.
    level : int
        Minimum level for both handlers.

    Returns the path of the JSON-lines file.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    for handler in list(root.handlers):
        if (handler.get_name() or "").startswith(_HANDLER_PREFIX):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.set_name(_HANDLER_PREFIX + "console")
    console.setLevel(level)
    console.setFormatter(_formatter(structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()))
    root.addHandler(console)

    if json_logs:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.set_name(_HANDLER_PREFIX + "file")
        fh.setLevel(level)
        fh.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        root.addHandler(fh)

    # httpx logs every request at INFO, including signed recording URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return log_file
