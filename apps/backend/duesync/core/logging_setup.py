"""Central logging setup for the API process and the scheduler worker."""

from __future__ import annotations

import logging

from .config import settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger.

    ``settings.LOG_LEVEL`` (``DUESYNC_LOG_LEVEL``) is the default; an explicit
    ``level`` wins. Existing handlers (uvicorn, pytest caplog) are preserved.
    """
    resolved = (level or settings.LOG_LEVEL or "INFO").upper()
    root_level = getattr(logging, resolved, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
