"""Logging helpers.

Everything logs through the ``rayin`` logger hierarchy. Activity events
(fetches, cache hits, preset changes, translation progress) go out at
DEBUG level, so they only show up when debug mode is switched on with
``RAYIN_DEBUG=true``.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("rayin")

CATEGORIES = ("TRANSLATION", "PRESET", "NOVEL", "CHAPTER", "FETCH", "SYSTEM")

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(debug: bool = False) -> None:
    """Attach a stream handler to the ``rayin`` logger.

    Calling this more than once only adjusts the level.
    """
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if not any(getattr(h, "_rayin", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%H:%M:%S"))
        handler._rayin = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def activity(category: str, action: str, **details: Any) -> None:
    """Log an activity event under ``rayin.activity.<category>``."""
    category = category.upper()
    activity_logger = logging.getLogger(f"rayin.activity.{category.lower()}")
    if not activity_logger.isEnabledFor(logging.DEBUG):
        return
    if details:
        rendered = " ".join(f"{key}={value!r}" for key, value in details.items())
        activity_logger.debug("[%s] %s %s", category, action, rendered)
    else:
        activity_logger.debug("[%s] %s", category, action)
