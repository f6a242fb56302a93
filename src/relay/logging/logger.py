"""Central logger configuration.

Why this exists:
- Consistent formatting across the relay worker, adapters and HTTP ingress
- One place to tune log level/handlers
"""

import logging
import sys

from src.relay.config.settings import settings


def setup_logger(name: str = "translate_relay") -> logging.Logger:
    """Create and return a configured logger.

    NOTE:
    - Every module should do: `logger = setup_logger(__name__)`.
    - Level comes from APP_LOG_LEVEL (falls back to INFO on unknown names).
    """
    logger = logging.getLogger(name)

    # Prevent duplicate handlers in reload environments (uvicorn --reload)
    if logger.handlers:
        return logger

    level = logging.getLevelName((settings.app_log_level or "INFO").upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Avoid propagating to root and double-printing
    logger.propagate = False
    return logger


def mask_secret(value: str, visible: int = 4) -> str:
    """Render a credential for logs without exposing it."""
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}…({len(value)} chars)"
