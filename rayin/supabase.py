"""Async client for the hosted Supabase backend.

The service keeps no database of its own. Novels, chapters, profiles and
translation presets live in PostgREST tables, users in GoTrue, and cover
images in object storage. This module talks to all three over plain
HTTP using ``httpx``:

* :class:`QueryBuilder` builds PostgREST queries (``client.table(...)``).
* :class:`AuthClient` signs users in and out and keeps the session in a
  session storage adapter, refreshing it when it expires.
* :class:`StorageClient` uploads objects and builds their public URLs.

Transport errors and 5xx answers are retried with exponential backoff;
any other answer that is not a 2xx is raised as
:class:`~rayin.errors.SupabaseError`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote, urlparse

import httpx

from .errors import SupabaseError

log = logging.getLogger("rayin.supabase")

# Sessions are refreshed this many seconds before they actually expire.
EXPIRY_MARGIN = 10

AUTH_EVENTS = ("INITIAL_SESSION", "SIGNED_IN", "SIGNED_OUT", "TOKEN_REFRESHED")

AuthCallback = Callable[[str, Optional[Dict[str, Any]]], Any]


class MemorySessionStorage:
    """Session storage that lives as long as the process."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileSessionStorage:
    """Session storage backed by a small JSON file.

    A missing, unreadable or corrupt file reads as "no saved session";
    it never crashes the caller. Write failures are logged and ignored.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            log.warning("session storage read failed path=%s error=%s", self.path, exc)
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            log.warning("session storage corrupt, ignoring saved session path=%s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data), encoding="utf-8")
        except OSError as exc:
            log.warning("session storage write failed path=%s error=%s", self.path, exc)

    def get_item(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        if not isinstance(value, str) or value in ("", "undefined", "null"):
            return None
        return value

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


@dataclass
class QueryResult:
    data: Any
    count: Optional[int] = None
    status: int = 200


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def _parse_count(content_range: Optional[str]) -> Optional[int]:
    """Return the total from a ``Content-Range`` header such as ``0-9/42``."""
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def _error_from_response(response: httpx.Response) -> SupabaseError:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = (
            body.get("message")
            or body.get("msg")
            or body.get("error_description")
            or body.get("error")
            or response.text
        )
        code = body.get("code") or body.get("error_code")
        details = body.get("details") or body.get("hint")
    else:
        message, code, details = response.text, None, None
    return SupabaseError(str(message or f"HTTP {response.status_code}"),
                         status=response.status_code,
                         code=str(code) if code is not None else None,
                         details=details)


class QueryBuilder:
    """PostgREST query for a single table.

    Filters and modifiers return the builder so calls can be chained::

        result = await (client.table("novels")
                        .select("id, title")
                        .eq("slug", slug)
                        .maybe_single()
                        .execute())
    """

    def __init__(self, client: "SupabaseClient", table: str) -> None:
        self._client = client
        self._table = table
        self._method = "GET"
        self._columns: Optional[str] = None
        self._filters: List[Tuple[str, str]] = []
        self._orders: List[str] = []
        self._limit: Optional[int] = None
        self._payload: Any = None
        self._count: Optional[str] = None
        self._head = False
        self._returning = False
        self._single = False
        self._token: Optional[str] = None

    # Actions

    def select(self, columns: str = "*", count: Optional[str] = None,
               head: bool = False) -> "QueryBuilder":
        if self._method == "GET":
            self._method = "HEAD" if head else "GET"
        else:
            # ``insert(...).select()`` asks for the written rows back.
            self._returning = True
        self._columns = columns
        self._count = count
        self._head = head
        return self

    def insert(self, payload: Union[Dict[str, Any], List[Dict[str, Any]]],
               returning: bool = False) -> "QueryBuilder":
        self._method = "POST"
        self._payload = payload
        self._returning = returning
        return self

    def update(self, payload: Dict[str, Any], returning: bool = False) -> "QueryBuilder":
        self._method = "PATCH"
        self._payload = payload
        self._returning = returning
        return self

    def delete(self) -> "QueryBuilder":
        self._method = "DELETE"
        return self

    # Filters

    def _filter(self, column: str, operator: str, value: Any) -> "QueryBuilder":
        self._filters.append((column, f"{operator}.{_format_value(value)}"))
        return self

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lte", value)

    def is_(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "is", value)

    def not_(self, column: str, operator: str, value: Any) -> "QueryBuilder":
        return self._filter(column, f"not.{operator}", value)

    # Modifiers

    def order(self, column: str, ascending: bool = True) -> "QueryBuilder":
        self._orders.append(f"{column}.{'asc' if ascending else 'desc'}")
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = count
        return self

    def maybe_single(self) -> "QueryBuilder":
        self._single = True
        return self

    def auth(self, token: str) -> "QueryBuilder":
        """Run the query as the user owning ``token`` instead of the session."""
        self._token = token
        return self

    def build_params(self) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        if self._columns is not None:
            params.append(("select", "".join(self._columns.split())))
        params.extend(self._filters)
        if self._orders:
            params.append(("order", ",".join(self._orders)))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        return params

    def _prefer(self) -> Optional[str]:
        parts = []
        if self._method in ("POST", "PATCH", "DELETE"):
            parts.append("return=representation" if self._returning else "return=minimal")
        if self._count:
            parts.append(f"count={self._count}")
        return ",".join(parts) or None

    async def execute(self) -> QueryResult:
        headers = {}
        prefer = self._prefer()
        if prefer:
            headers["Prefer"] = prefer
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        response = await self._client.request(
            self._method,
            f"/rest/v1/{self._table}",
            params=self.build_params(),
            json=self._payload,
            headers=headers,
        )
        count = _parse_count(response.headers.get("content-range")) if self._count else None
        if self._head or not response.content:
            data: Any = None if self._head else []
        else:
            data = response.json()
        if self._single:
            rows = data if isinstance(data, list) else [data]
            if len(rows) > 1:
                raise SupabaseError(
                    "JSON object requested, multiple (or no) rows returned",
                    status=406,
                    code="PGRST116",
                    details=f"Results contain {len(rows)} rows",
                )
            data = rows[0] if rows else None
        return QueryResult(data=data, count=count, status=response.status_code)


class AuthClient:
    """GoTrue session handling."""

    def __init__(self, client: "SupabaseClient", storage=None,
                 clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._storage = storage if storage is not None else MemorySessionStorage()
        self._clock = clock
        self._session: Optional[Dict[str, Any]] = None
        self._loaded = False
        self._listeners: List[AuthCallback] = []

    @property
    def storage_key(self) -> str:
        host = urlparse(self._client.url).hostname or "local"
        return f"sb-{host.split('.')[0]}-auth-token"

    @property
    def access_token(self) -> Optional[str]:
        if self._session:
            return self._session.get("access_token")
        return None

    def on_auth_state_change(self, callback: AuthCallback) -> Callable[[], None]:
        """Register ``callback(event, session)``; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _emit(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("auth listener failed event=%s", event)

    def _load(self) -> Optional[Dict[str, Any]]:
        raw = self._storage.get_item(self.storage_key)
        if not raw:
            return None
        try:
            session = json.loads(raw)
        except ValueError:
            log.warning("saved session unreadable, ignoring")
            return None
        if not isinstance(session, dict) or not session.get("access_token"):
            return None
        return session

    def _save(self, session: Dict[str, Any]) -> Dict[str, Any]:
        if not session.get("expires_at") and session.get("expires_in"):
            session["expires_at"] = int(self._clock()) + int(session["expires_in"])
        self._session = session
        self._loaded = True
        self._storage.set_item(self.storage_key, json.dumps(session))
        return session

    def _clear(self) -> None:
        self._session = None
        self._loaded = True
        self._storage.remove_item(self.storage_key)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._session = self._load()
            self._loaded = True

    def _is_expired(self, session: Dict[str, Any]) -> bool:
        expires_at = session.get("expires_at")
        if not expires_at:
            return False
        return float(expires_at) <= self._clock() + EXPIRY_MARGIN

    async def get_session(self) -> Optional[Dict[str, Any]]:
        """Return the current session, refreshing it if it has expired."""
        if not self._loaded:
            self._session = self._load()
            self._loaded = True
            await self._emit("INITIAL_SESSION", self._session)
        session = self._session
        if session and self._is_expired(session):
            try:
                session = await self.refresh_session()
            except SupabaseError as exc:
                log.warning("expired session could not be refreshed error=%s", exc.message)
                self._clear()
                await self._emit("SIGNED_OUT", None)
                return None
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        response = await self._client.request(
            "POST", "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            authenticated=False,
        )
        session = self._save(response.json())
        log.info("signed in email=%s", email)
        await self._emit("SIGNED_IN", session)
        return session

    async def sign_up(self, email: str, password: str,
                      data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Register a user; ``data`` becomes the user's metadata.

        When email confirmation is disabled the answer already carries a
        session, which is stored as if the user had signed in.
        """
        response = await self._client.request(
            "POST", "/auth/v1/signup",
            json={"email": email, "password": password, "data": data or {}},
            authenticated=False,
        )
        body = response.json()
        if body.get("access_token"):
            session = self._save(body)
            await self._emit("SIGNED_IN", session)
        return body

    async def sign_out(self) -> None:
        self._ensure_loaded()
        token = self.access_token
        if token:
            try:
                await self._client.request("POST", "/auth/v1/logout")
            except SupabaseError as exc:
                log.warning("remote sign out failed error=%s", exc.message)
        self._clear()
        await self._emit("SIGNED_OUT", None)

    async def refresh_session(self) -> Dict[str, Any]:
        self._ensure_loaded()
        refresh_token = (self._session or {}).get("refresh_token")
        if not refresh_token:
            raise SupabaseError("Auth session missing!", status=400)
        response = await self._client.request(
            "POST", "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
            authenticated=False,
        )
        session = self._save(response.json())
        await self._emit("TOKEN_REFRESHED", session)
        return session

    async def get_user(self, jwt: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return the user behind ``jwt``, or behind the current session.

        An expired or unknown ``jwt`` raises :class:`SupabaseError` with
        status 401 or 403.
        """
        if jwt is None:
            session = await self.get_session()
            if not session:
                return None
            response = await self._client.request("GET", "/auth/v1/user")
        else:
            response = await self._client.request(
                "GET", "/auth/v1/user", headers={"Authorization": f"Bearer {jwt}"},
            )
        return response.json()


class BucketClient:
    def __init__(self, client: "SupabaseClient", bucket: str) -> None:
        self._client = client
        self.bucket = bucket

    async def upload(self, path: str, data: bytes, content_type: str = "application/octet-stream",
                     upsert: bool = False) -> Dict[str, Any]:
        response = await self._client.request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{quote(path)}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true" if upsert else "false"},
        )
        return response.json() if response.content else {}

    def get_public_url(self, path: str) -> str:
        return f"{self._client.url}/storage/v1/object/public/{self.bucket}/{quote(path)}"


class StorageClient:
    def __init__(self, client: "SupabaseClient") -> None:
        self._client = client

    def from_(self, bucket: str) -> BucketClient:
        return BucketClient(self._client, bucket)


class SupabaseClient:
    """Entry point for tables, auth and storage."""

    def __init__(self, url: str, key: str, *, storage=None,
                 http: Optional[httpx.AsyncClient] = None, timeout: float = 30.0,
                 max_retries: int = 3, backoff: float = 0.5,
                 clock: Callable[[], float] = time.time) -> None:
        self.url = url.rstrip("/")
        self.key = key
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self.auth = AuthClient(self, storage, clock=clock)
        self.storage = StorageClient(self)
        log.debug("client initialised url=%s", self.url)

    @classmethod
    def from_settings(cls, settings, *, storage=None,
                      http: Optional[httpx.AsyncClient] = None) -> "SupabaseClient":
        return cls(
            settings.supabase_url,
            settings.supabase_key,
            storage=storage,
            http=http,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    def _headers(self, extra: Optional[Dict[str, str]], authenticated: bool) -> Dict[str, str]:
        token = self.auth.access_token if authenticated else None
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {token or self.key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(self, method: str, path: str, *, params: Any = None, json: Any = None,
                      content: Optional[bytes] = None, headers: Optional[Dict[str, str]] = None,
                      authenticated: bool = True) -> httpx.Response:
        """Send a request, retrying transport errors and 5xx answers.

        Returns the response for any 2xx status and raises
        :class:`SupabaseError` otherwise.
        """
        url = f"{self.url}{path}"
        request_headers = self._headers(headers, authenticated)
        last_error = SupabaseError(f"{method} {path} was not attempted")
        for attempt in range(self.max_retries):
            try:
                response = await self._http.request(
                    method, url, params=params, json=json, content=content,
                    headers=request_headers,
                )
            except httpx.TransportError as exc:
                last_error = SupabaseError(f"{method} {path} failed: {exc}")
                log.warning("request failed method=%s path=%s attempt=%d error=%s",
                            method, path, attempt + 1, exc)
            else:
                if response.status_code < 400:
                    return response
                last_error = _error_from_response(response)
                if response.status_code < 500:
                    raise last_error
                log.warning("server error method=%s path=%s attempt=%d status=%d",
                            method, path, attempt + 1, response.status_code)
            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.backoff * (2 ** attempt))
        raise last_error

    async def aclose(self) -> None:
        await self._http.aclose()
