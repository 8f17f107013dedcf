from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest

from rayin.supabase import MemorySessionStorage, SupabaseClient

SUPABASE_URL = "https://demo.supabase.co"
ANON_KEY = "anon-key"


def _fmt(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def _split_top_level(columns: str) -> List[str]:
    parts, depth, current = [], 0, ""
    for ch in columns:
        if ch == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    if current:
        parts.append(current)
    return [p.strip() for p in parts if p.strip()]


def _compare(row_value: Any, op: str, raw: str) -> bool:
    if op in ("eq", "is"):
        return _fmt(row_value) == raw
    if op == "neq":
        return _fmt(row_value) != raw
    if row_value is None:
        return False
    try:
        left, right = float(row_value), float(raw)
    except (TypeError, ValueError):
        left, right = str(row_value), raw
    return {
        "gt": left > right,
        "gte": left >= right,
        "lt": left < right,
        "lte": left <= right,
    }[op]


class Clock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory stand-in for the PostgREST, GoTrue and storage endpoints."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, Dict[str, Any]] = {}
        self.refresh_tokens: Dict[str, Dict[str, Any]] = {}
        self.objects: Dict[str, bytes] = {}
        self.failures: List[Tuple[str, int, Optional[str]]] = []
        self.auto_confirm = False
        self._counter = 0

    # Test helpers

    def add(self, table: str, *rows: Dict[str, Any]) -> None:
        for row in rows:
            self.tables.setdefault(table, []).append(dict(row))

    def fail(self, path_fragment: str, status: int = 500, times: int = 1,
             query: Optional[str] = None) -> None:
        """Answer the next ``times`` matching requests with ``status``.

        ``query`` additionally requires that text in the decoded query string.
        """
        self.failures.extend([(path_fragment, status, query)] * times)

    def token_for(self, email: str) -> str:
        """Issue an access token for a registered user."""
        return self._session_for(self.users[email]["user"])["access_token"]

    def add_user(self, email: str, password: str, **metadata: Any) -> Dict[str, Any]:
        user = {"id": str(uuid.uuid4()), "email": email, "user_metadata": metadata}
        self.users[email] = {"password": password, "user": user}
        return user

    def requests_to(self, path_fragment: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if path_fragment in r.url.path and (method is None or r.method == method)
        ]

    def client(self, **kwargs: Any) -> SupabaseClient:
        kwargs.setdefault("storage", MemorySessionStorage())
        kwargs.setdefault("backoff", 0)
        return SupabaseClient(
            SUPABASE_URL,
            ANON_KEY,
            http=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            **kwargs,
        )

    # Transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        query_string = unquote(request.url.query.decode("ascii"))
        for index, (fragment, status, query) in enumerate(self.failures):
            if fragment in path and (query is None or query in query_string):
                del self.failures[index]
                return httpx.Response(status, json={"message": f"injected {status}"})
        if path.startswith("/rest/v1/"):
            return self._rest(request, path[len("/rest/v1/"):])
        if path.startswith("/auth/v1/"):
            return self._auth(request, path[len("/auth/v1/"):])
        if path.startswith("/storage/v1/object/"):
            key = path[len("/storage/v1/object/"):]
            self.objects[key] = request.content
            return httpx.Response(200, json={"Key": key})
        return httpx.Response(404, json={"message": "not found"})

    def _session_for(self, user: Dict[str, Any]) -> Dict[str, Any]:
        self._counter += 1
        session = {
            "access_token": f"access-{self._counter}",
            "refresh_token": f"refresh-{self._counter}",
            "token_type": "bearer",
            "expires_in": 3600,
            "user": user,
        }
        self.tokens[session["access_token"]] = user
        self.refresh_tokens[session["refresh_token"]] = user
        return session

    def _auth(self, request: httpx.Request, endpoint: str) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if endpoint == "token":
            grant = request.url.params.get("grant_type")
            if grant == "password":
                entry = self.users.get(body.get("email"))
                if not entry or entry["password"] != body.get("password"):
                    return httpx.Response(400, json={"error": "invalid_grant",
                                                     "error_description": "Invalid login credentials"})
                return httpx.Response(200, json=self._session_for(entry["user"]))
            if grant == "refresh_token":
                user = self.refresh_tokens.pop(body.get("refresh_token"), None)
                if user is None:
                    return httpx.Response(400, json={"error_description": "Invalid Refresh Token"})
                return httpx.Response(200, json=self._session_for(user))
        if endpoint == "signup":
            if body.get("email") in self.users:
                return httpx.Response(422, json={"code": 422, "error_code": "user_already_exists",
                                                 "msg": "User already registered"})
            user = self.add_user(body["email"], body["password"], **(body.get("data") or {}))
            if self.auto_confirm:
                return httpx.Response(200, json=self._session_for(user))
            return httpx.Response(200, json=user)
        if endpoint == "logout":
            return httpx.Response(204)
        if endpoint == "user":
            token = request.headers.get("authorization", "").replace("Bearer ", "")
            user = self.tokens.get(token)
            if user is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=user)
        return httpx.Response(404, json={"msg": "unknown auth endpoint"})

    def _rest(self, request: httpx.Request, table: str) -> httpx.Response:
        rows = self.tables.setdefault(table, [])
        select, order, limit = "*", None, None
        filters = []
        for key, value in request.url.params.multi_items():
            if key == "select":
                select = value
            elif key == "order":
                order = value
            elif key == "limit":
                limit = int(value)
            else:
                negate = value.startswith("not.")
                if negate:
                    value = value[4:]
                op, _, raw = value.partition(".")
                filters.append((key, op, raw, negate))

        def matches(row: Dict[str, Any]) -> bool:
            return all(_compare(row.get(k), op, raw) != negate for k, op, raw, negate in filters)

        prefer = request.headers.get("prefer", "")
        wants_rows = "return=representation" in prefer

        if request.method == "POST":
            payload = json.loads(request.content)
            new_rows = payload if isinstance(payload, list) else [payload]
            for row in new_rows:
                row.setdefault("id", str(uuid.uuid4()))
                rows.append(row)
            return httpx.Response(201, json=new_rows) if wants_rows else httpx.Response(201)
        if request.method == "PATCH":
            payload = json.loads(request.content)
            updated = [row for row in rows if matches(row)]
            for row in updated:
                row.update(payload)
            return httpx.Response(200, json=updated) if wants_rows else httpx.Response(204)
        if request.method == "DELETE":
            self.tables[table] = [row for row in rows if not matches(row)]
            return httpx.Response(204)

        result = [row for row in rows if matches(row)]
        if order:
            for part in reversed(order.split(",")):
                column, _, direction = part.partition(".")
                present = [r for r in result if r.get(column) is not None]
                missing = [r for r in result if r.get(column) is None]
                present.sort(key=lambda r: r[column], reverse=direction == "desc")
                result = present + missing
        total = len(result)
        if limit is not None:
            result = result[:limit]
        result = [self._project(table, row, select) for row in result]

        headers = {}
        if "count=exact" in prefer:
            headers["Content-Range"] = f"0-{max(total - 1, 0)}/{total}" if total else "*/0"
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, json=result, headers=headers)

    def _project(self, table: str, row: Dict[str, Any], select: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for column in _split_top_level(select):
            if column == "*":
                out.update(row)
            elif "(" in column:
                name, inner = column.split("(", 1)
                inner = inner.rstrip(")")
                children = [
                    r for r in self.tables.get(name, [])
                    if r.get(f"{table.rstrip('s')}_id") == row.get("id")
                ]
                out[name] = [self._project(name, child, inner) for child in children]
            elif column in row:
                out[column] = row[column]
        return out


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> Clock:
    return Clock()
