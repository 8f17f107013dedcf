"""Runtime configuration for the Rayin Translation service.

All settings come from environment variables so that the same code runs
unchanged on Vercel, in a local ``uvicorn`` process and from the ``rayin``
command line tool. Malformed numeric values never raise; they fall back
to the defaults below.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

DEFAULT_SITE_NAME = "Rayin Translation"
DEFAULT_SESSION_FILE = Path.home() / ".rayin" / "session.json"


@dataclass
class Settings:
    supabase_url: str = ""
    supabase_key: str = ""
    openrouter_api_key: Optional[str] = None
    debug: bool = False
    site_name: str = DEFAULT_SITE_NAME
    site_origin: Optional[str] = None
    session_file: Path = field(default_factory=lambda: DEFAULT_SESSION_FILE)
    request_timeout: float = 30.0
    max_retries: int = 3


def _safe_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
        if parsed > 0:
            return parsed
    except (TypeError, ValueError):
        pass
    return fallback


def _safe_positive_float(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
        if parsed > 0:
            return parsed
    except (TypeError, ValueError):
        pass
    return fallback


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    """Build :class:`Settings` from ``environ``."""
    session_file = environ.get("RAYIN_SESSION_FILE")
    return Settings(
        supabase_url=environ.get("SUPABASE_URL", "").rstrip("/"),
        supabase_key=environ.get("SUPABASE_KEY", ""),
        openrouter_api_key=environ.get("OPENROUTER_API_KEY") or None,
        debug=_truthy(environ.get("RAYIN_DEBUG")),
        site_name=environ.get("RAYIN_SITE_NAME") or DEFAULT_SITE_NAME,
        site_origin=environ.get("RAYIN_SITE_ORIGIN") or None,
        session_file=Path(session_file).expanduser() if session_file else DEFAULT_SESSION_FILE,
        request_timeout=_safe_positive_float(environ.get("RAYIN_REQUEST_TIMEOUT"), 30.0),
        max_retries=_safe_positive_int(environ.get("RAYIN_MAX_RETRIES"), 3),
    )
