"""Signed-in user state."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..errors import SupabaseError
from ..supabase import SupabaseClient

log = logging.getLogger("rayin.stores.auth")

SUPERADMIN_ROLE = "superadmin"


async def read_profile(client: SupabaseClient, user_id: str,
                       token: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Return ``role`` and ``username`` for ``user_id``, or ``None``.

    ``token`` reads the row as that user rather than the client's session.
    """
    query = client.table("profiles").select("role, username").eq("id", user_id).maybe_single()
    if token:
        query = query.auth(token)
    result = await query.execute()
    return result.data


class AuthStore:
    """Tracks the current user, their profile and whether they are a superadmin."""

    def __init__(self, client: SupabaseClient) -> None:
        self.client = client
        self.user: Optional[Dict[str, Any]] = None
        self.profile: Optional[Dict[str, Any]] = None
        self.is_superadmin = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    def _reset(self) -> None:
        self.user = None
        self.profile = None
        self.is_superadmin = False

    async def _apply_session(self, session: Optional[Dict[str, Any]]) -> None:
        user = (session or {}).get("user")
        if user:
            self.user = user
            await self.fetch_profile(user["id"])
        else:
            self._reset()

    async def _on_auth_change(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        log.debug("auth state changed event=%s", event)
        await self._apply_session(session)

    async def check_user(self) -> Optional[Dict[str, Any]]:
        """Load the saved session and keep following auth state changes."""
        session = await self.client.auth.get_session()
        await self._apply_session(session)
        if self._unsubscribe is None:
            self._unsubscribe = self.client.auth.on_auth_state_change(self._on_auth_change)
        return self.user

    async def fetch_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await read_profile(self.client, user_id)
        except SupabaseError as exc:
            log.warning("profile fetch failed user_id=%s error=%s", user_id, exc.message)
            data = None
        if data:
            self.profile = data
            self.is_superadmin = data.get("role") == SUPERADMIN_ROLE
        else:
            # The profile row is created by a database trigger and may not
            # exist yet right after sign-up.
            self.is_superadmin = False
        return data

    async def sign_in(self, email: str, password: str) -> None:
        await self.client.auth.sign_in_with_password(email, password)

    async def sign_up(self, email: str, password: str, username: str) -> None:
        await self.client.auth.sign_up(email, password, data={"username": username})

    async def sign_out(self) -> None:
        try:
            await self.client.auth.sign_out()
        finally:
            self._reset()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
