"""
Nextcloud Upgrade Logging Configuration

structlog events go to stderr, rendered for a terminal or as JSON lines for
unattended runs (cron, configuration management). A run can additionally be
recorded to a JSON file kept next to the occ upgrade log.
"""
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

NOISY_LOGGERS = ("httpx", "httpcore")
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
FILE_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def shared_processors() -> List[Any]:
    """Processors applied to every event before it is rendered"""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure application logging

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render events as JSON lines instead of console output
        log_file: Optional path of a JSON log file receiving every record
    """
    # stdout belongs to the operator status lines
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=_level(log_level),
        force=True,
    )
    if log_file:
        logging.getLogger().addHandler(get_file_handler(log_file, log_level))

    if json_logs:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=shared_processors() + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_file_handler(log_file: str, log_level: str = "INFO") -> logging.FileHandler:
    """
    Create a JSON lines file handler, creating the parent directory

    Returns:
        Configured file handler
    """
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(_level(log_level))
    handler.setFormatter(jsonlogger.JsonFormatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
    return handler


def bind_run_context(**values: Any) -> None:
    """Attach values to every event logged for the rest of the run"""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()
