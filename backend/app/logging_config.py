"""Logging helpers for the Fixer backend.

All loggers live under the ``fixer`` namespace so a single handler
configured at startup covers routes, services and the payment core.
"""

import logging
import sys

ROOT_LOGGER = "fixer"

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach a stream handler to the ``fixer`` logger (idempotent)."""
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level.upper())
    if not any(h.get_name() == ROOT_LOGGER for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(ROOT_LOGGER)
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a logger, prefixing ``fixer.`` when the name lacks it."""
    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def log_payment_event(logger: logging.Logger, event: str, **fields) -> None:
    """Log one money movement as ``event | key=value | ...``.

    None values are dropped so call sites can pass optional ids freely.
    """
    parts = [event]
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    logger.info(" | ".join(parts))
