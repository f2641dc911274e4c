"""Process-level logging configuration.

Library modules only ever call ``logging.getLogger(__name__)``; the embedding
application calls :func:`configure_logging` once at start-up.
"""

from __future__ import annotations

import logging

from conduit.config import get_settings

# Transport libraries log every request at INFO/DEBUG, which would drown the
# orchestration logs and may echo URLs carrying query-string secrets.
_NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def configure_logging(level: str | None = None) -> None:
    level_name = (level or get_settings().log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(level=log_level, format="%(levelname)s - %(message)s", handlers=[logging.StreamHandler()])

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


__all__ = ["configure_logging"]
