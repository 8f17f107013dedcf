"""Deadline helpers for network calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from .errors import OperationTimeout, SupabaseError

T = TypeVar("T")

log = logging.getLogger("rayin.timeout")


async def with_timeout(awaitable: Awaitable[T], seconds: float, label: str = "Operation") -> T:
    """Await ``awaitable`` but give up after ``seconds``.

    Raises :class:`OperationTimeout` when the deadline passes. Errors
    raised by the awaitable itself propagate unchanged.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise OperationTimeout(label, seconds) from None


async def safe_refresh_session(client, timeout: float = 5.0) -> bool:
    """Refresh the auth session, never raising.

    Saves must not hang on a slow auth service, so a refresh that fails
    or runs past ``timeout`` is logged and skipped. Returns ``True`` when
    the refresh went through.
    """
    try:
        await with_timeout(client.auth.refresh_session(), timeout, "Session refresh")
    except OperationTimeout as exc:
        log.warning("session refresh skipped reason=%s", exc)
        return False
    except SupabaseError as exc:
        log.warning("session refresh warning error=%s", exc.message)
        return False
    return True
