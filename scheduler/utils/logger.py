"""Process-wide logging setup shared by every layer."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from scheduler.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers that drown out scheduler output at INFO.
_NOISY_LOGGERS = ("uvicorn.access", "httpx")

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stdout handler to the root logger on first use."""

    global _configured
    if _configured:
        return

    resolved_level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved_level, format=LOG_FORMAT, stream=sys.stdout)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
