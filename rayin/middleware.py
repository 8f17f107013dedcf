"""Link previews for social media crawlers.

Crawlers that unfurl links (Discord, Twitter, Facebook and friends) do
not run JavaScript, so the SPA shell would give them the generic site
title and logo. For ``/novel/<slug>`` requests coming from a known bot
this middleware looks the novel up and answers with a small HTML page
carrying Open Graph and Twitter card tags instead. Everything else,
including chapter pages and any lookup failure, falls through to the
normal route.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from .errors import SupabaseError
from .image import optimized_image_url
from .supabase import SupabaseClient

log = logging.getLogger("rayin.middleware")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

BOT_USER_AGENTS = (
    "facebookexternalhit",
    "facebot",
    "twitterbot",
    "linkedinbot",
    "slackbot",
    "discordbot",
    "whatsapp",
    "telegrambot",
    "googlebot",
    "bingbot",
    "applebot",
    "pinterestbot",
    "redditbot",
    "embedly",
    "showyoubot",
    "outbrain",
    "vkshare",
    "w3c_validator",
    "kakaotalk-scrap",
    "naverbot",
    "yandexbot",
    "rogerbot",
    "seznambot",
)

PREVIEW_COLUMNS = "title, synopsis, image_url, author_romaji, author"
PREVIEW_HEADERS = {"Cache-Control": "public, max-age=3600, s-maxage=86400"}
LOGO_PATH = "/Logo%20Rayin%20Translation.png"


def is_bot(user_agent: Optional[str]) -> bool:
    lower = (user_agent or "").lower()
    return any(bot in lower for bot in BOT_USER_AGENTS)


def trim_description(text: Optional[str], max_length: int = 200) -> str:
    """Collapse newlines and cut ``text`` to ``max_length`` on a word boundary."""
    if not text:
        return ""
    clean = re.sub(r"\n+", " ", text).strip()
    if len(clean) <= max_length:
        return clean
    return re.sub(r"\s+\S*$", "", clean[:max_length]) + "…"


def preview_slug(path: str) -> Optional[str]:
    """Return the slug for ``/novel/<slug>``; ``None`` for any other path."""
    parts = [part for part in path.split("/") if part]
    if len(parts) != 2 or parts[0] != "novel":
        return None
    return parts[1]


async def fetch_preview_novel(client: SupabaseClient, slug: str) -> Optional[Dict[str, Any]]:
    result = await client.table("novels").select(PREVIEW_COLUMNS).eq("slug", slug).execute()
    rows = result.data
    return rows[0] if isinstance(rows, list) and rows else None


def render_preview(novel: Dict[str, Any], page_url: str, origin: str, site_name: str) -> str:
    title = novel.get("title") or site_name
    description = trim_description(novel.get("synopsis")) or (
        f"Read {novel.get('title')} translated to English at {site_name}"
    )
    image = novel.get("image_url")
    image = (
        optimized_image_url(image, width=600, height=900, resize="cover")
        if image else f"{origin}{LOGO_PATH}"
    )
    return templates.get_template("preview.html").render(
        title=title,
        author=novel.get("author_romaji") or novel.get("author") or "",
        description=description,
        image=image,
        page_url=page_url,
        site_name=site_name,
    )


async def link_preview_middleware(request: Request, call_next):
    """HTTP middleware; expects ``client`` and ``settings`` on ``app.state``."""
    if request.method != "GET" or not is_bot(request.headers.get("user-agent")):
        return await call_next(request)
    slug = preview_slug(request.url.path)
    if not slug:
        return await call_next(request)

    state = request.app.state
    origin = f"{request.url.scheme}://{request.url.netloc}"
    # A preview is optional: any failure falls back to the app shell.
    html = None
    try:
        novel = await fetch_preview_novel(state.client, slug)
        if novel:
            html = render_preview(novel, str(request.url), origin, state.settings.site_name)
    except SupabaseError as exc:
        log.warning("preview lookup failed slug=%s error=%s", slug, exc.message)
    except Exception:
        log.exception("preview failed slug=%s", slug)
    if html is None:
        return await call_next(request)
    log.info("served link preview slug=%s", slug)
    return HTMLResponse(html, headers=PREVIEW_HEADERS)
