"""FastAPI application for the Rayin Translation site.

The app is a thin layer in front of the hosted backend. It serves the SPA
shell for the reader routes, a small JSON API backed by the caching
stores in :mod:`rayin.stores`, and a streaming translation endpoint that
relays OpenRouter's event stream without exposing the API key to the
browser. Bot requests for novel pages are answered by the link preview
middleware before they reach any route.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates

from .config import Settings, load_settings
from .errors import PresetError, SupabaseError, TranslationError
from .logger import activity, configure_logging
from .middleware import link_preview_middleware
from .presets import AISettings
from .stores import HomeStore, NovelStore
from .stores.auth import SUPERADMIN_ROLE, read_profile
from .supabase import SupabaseClient
from .translator import Translator

log = logging.getLogger("rayin.app")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# Cache bookkeeping that callers have no use for.
INTERNAL_KEYS = ("fetched_at", "is_partial")


def _public(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in INTERNAL_KEYS}


def _sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def create_app(settings: Optional[Settings] = None, client: Optional[SupabaseClient] = None,
               translate_http: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """Build the application.

    ``client`` and ``translate_http`` replace the network clients built
    from ``settings``; tests use them to plug in mock transports.
    """
    settings = settings or load_settings()
    configure_logging(settings.debug)
    client = client or SupabaseClient.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        activity("SYSTEM", "Startup", supabase_url=settings.supabase_url)
        yield
        await app.state.novels.drain()
        await client.aclose()

    app = FastAPI(title="Rayin Translation", lifespan=lifespan)
    app.state.settings = settings
    app.state.client = client
    app.state.novels = NovelStore(client)
    app.state.home = HomeStore(client)
    app.middleware("http")(link_preview_middleware)

    @app.exception_handler(SupabaseError)
    async def supabase_error_handler(request: Request, exc: SupabaseError) -> Response:
        log.error("backend error path=%s status=%s error=%s", request.url.path, exc.status, exc.message)
        return JSONResponse({"detail": exc.message}, status_code=502)

    @app.get("/api/home")
    async def home_endpoint(refresh: bool = False) -> Response:
        home: HomeStore = app.state.home
        await home.fetch_home_data(force_refresh=refresh)
        home.seed_novel_store(app.state.novels)
        return JSONResponse(home.as_dict())

    @app.get("/api/novels/{slug}")
    async def novel_endpoint(slug: str) -> Response:
        novel = await app.state.novels.fetch_novel(slug)
        if not novel:
            raise HTTPException(status_code=404, detail="Novel not found")
        return JSONResponse(_public(novel))

    @app.get("/api/novels/{slug}/chapters/{chapter_number}")
    async def chapter_endpoint(slug: str, chapter_number: int) -> Response:
        chapter = await app.state.novels.fetch_chapter(slug, chapter_number)
        if not chapter:
            raise HTTPException(status_code=404, detail="Chapter not found")
        return JSONResponse(_public(chapter))

    @app.post("/api/prefetch")
    async def prefetch_endpoint(request: Request) -> Response:
        """Warm the cache for a novel page, or for one of its chapters.

        Called when a reader hovers a link; returns immediately.
        """
        data = await _json_body(request)
        slug = data.get("slug")
        if not slug:
            raise HTTPException(status_code=400, detail="Missing 'slug' in request body")
        novels: NovelStore = app.state.novels
        chapter_number = data.get("chapter_number")
        if chapter_number:
            task = novels.prefetch_chapter(slug, chapter_number)
        else:
            task = novels.prefetch_novel(slug)
        return JSONResponse({"scheduled": task is not None}, status_code=202)

    async def require_superadmin(request: Request) -> Dict[str, Any]:
        """Resolve the bearer token to a user holding the superadmin role."""
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(status_code=401, detail="Sign in required",
                                headers={"WWW-Authenticate": "Bearer"})
        try:
            user = await client.auth.get_user(token)
        except SupabaseError as exc:
            if exc.status in (401, 403):
                raise HTTPException(status_code=401, detail="Invalid or expired session",
                                    headers={"WWW-Authenticate": "Bearer"})
            raise
        profile = await read_profile(client, user["id"], token)
        if (profile or {}).get("role") != SUPERADMIN_ROLE:
            log.warning("translation refused user_id=%s", user.get("id"))
            raise HTTPException(status_code=403, detail="Superadmin access required")
        return user

    @app.post("/api/translate")
    async def translate_endpoint(request: Request) -> Response:
        """Stream a translation as server-sent events.

        Only superadmins may translate; the caller sends their access
        token as ``Authorization: Bearer <token>``. Events are
        ``reasoning`` and ``content`` (each ``{"text": ...}``), then
        either ``done`` or ``error``.
        """
        user = await require_superadmin(request)
        data = await _json_body(request)
        text = data.get("text") or ""
        if not isinstance(text, str) or not text.strip():
            raise HTTPException(status_code=400, detail="Missing 'text' in request body")
        note = data.get("note") or ""
        if not isinstance(note, str):
            raise HTTPException(status_code=400, detail="'note' must be a string")
        try:
            ai_settings = AISettings.from_dict(data.get("settings"))
        except PresetError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        if not settings.openrouter_api_key:
            raise HTTPException(status_code=503, detail="Translation is not configured")
        activity("TRANSLATION", "Requested", user_id=user.get("id"), chars=len(text))
        translator = Translator(
            settings.openrouter_api_key,
            ai_settings,
            referer=settings.site_origin or str(request.base_url).rstrip("/"),
            http=translate_http,
        )

        async def events() -> AsyncIterator[str]:
            tokens = 0
            try:
                async for reasoning, content in translator.stream(text, note):
                    if reasoning:
                        yield _sse("reasoning", {"text": reasoning})
                    if content:
                        tokens += 1
                        yield _sse("content", {"text": content})
                yield _sse("done", {"tokens": tokens})
            except TranslationError as exc:
                log.error("translation stream failed error=%s", exc)
                yield _sse("error", {"message": str(exc)})

        return StreamingResponse(events(), media_type="text/event-stream",
                                 headers={"Cache-Control": "no-cache"})

    # SPA shell. Rendering happens in the browser.

    def _shell(request: Request) -> HTMLResponse:
        return templates.TemplateResponse(request, "index.html", {"site_name": settings.site_name})

    @app.get("/", response_class=HTMLResponse)
    async def ui_home(request: Request) -> HTMLResponse:
        return _shell(request)

    @app.get("/novel/{slug}", response_class=HTMLResponse)
    async def ui_novel(request: Request, slug: str) -> HTMLResponse:
        return _shell(request)

    @app.get("/novel/{slug}/{chapter}", response_class=HTMLResponse)
    async def ui_chapter(request: Request, slug: str, chapter: str) -> HTMLResponse:
        return _shell(request)

    return app
