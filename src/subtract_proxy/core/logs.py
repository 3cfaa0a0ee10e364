import logging
import sys
from typing import Optional

import structlog

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def configure_logging(level: str = "info", file: Optional[str] = None) -> None:
    """JSON lines on stderr, plus a file copy when ``file`` is set."""
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    handlers = [logging.StreamHandler(sys.stderr)]
    if file:
        handlers.append(logging.FileHandler(file, encoding="utf-8"))

    # Output the JSON string as-is
    logging.basicConfig(
        format="%(message)s",
        level=_LEVELS.get(level, logging.INFO),
        handlers=handlers,
        force=True,
    )
