"""
Logging setup.

Routes structlog through the standard library so credit meter events and
third-party logs (httpx, openai) share one handler.
"""

import logging
import os
import sys
from typing import Any, List, Optional

import structlog


def configure_logging(log_level: int = logging.INFO, json_format: Optional[bool] = None) -> None:
    """Configure stdlib logging and structlog together.

    Args:
        log_level: Minimum log level (default: INFO)
        json_format: Use JSON output (True) or console format (False).
                     If None, JSON is used unless ENVIRONMENT is "development".
    """
    if json_format is None:
        json_format = os.environ.get("ENVIRONMENT", "development") != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))
