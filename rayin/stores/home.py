"""Home page listings: featured, latest and popular novels."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..errors import SupabaseError
from ..logger import activity
from ..supabase import SupabaseClient

log = logging.getLogger("rayin.stores.home")

HOME_TTL = 5 * 60
FEATURED_LIMIT = 10
LATEST_LIMIT = 15
LATEST_CHAPTERS = 3
POPULAR_LIMIT = 10
POPULAR_COLUMNS = "id, title, slug, image_url, author"


class HomeStore:
    def __init__(self, client: SupabaseClient, clock: Callable[[], float] = time.time) -> None:
        self.client = client
        self.clock = clock
        self.featured: List[Dict[str, Any]] = []
        self.latest: List[Dict[str, Any]] = []
        self.popular: Dict[str, List[Dict[str, Any]]] = {"all": [], "weekly": [], "monthly": []}
        # True once there is something to show, even if it is old.
        self.is_ready = False
        self.is_loading = False
        self.last_fetched: Optional[float] = None
        self.error: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        return self.last_fetched is None or self.clock() - self.last_fetched > HOME_TTL

    async def fetch_home_data(self, force_refresh: bool = False) -> None:
        is_stale = self.is_stale
        if not is_stale and not force_refresh and self.is_ready:
            activity("FETCH", "Home Data Cached")
            return

        self.is_loading = True
        self.error = None
        activity("FETCH", "Home Data Fetch Start", force_refresh=force_refresh, is_stale=is_stale)
        try:
            sections = ("featured", "latest", "popular")
            results = await asyncio.gather(
                self.fetch_featured(),
                self.fetch_latest(),
                self.fetch_popular(),
                return_exceptions=True,
            )
            for section, result in zip(sections, results):
                if isinstance(result, SupabaseError):
                    log.warning("home section failed section=%s error=%s", section, result.message)
                elif isinstance(result, BaseException):
                    raise result
            self.last_fetched = self.clock()
            self.is_ready = True
        except Exception as exc:
            # Old data, if any, stays on screen.
            log.exception("home data fetch failed")
            self.error = str(exc)
        finally:
            self.is_loading = False

    async def fetch_featured(self) -> None:
        result = await (
            self.client.table("novels")
            .select("*")
            .not_("banner_url", "is", None)
            .limit(FEATURED_LIMIT)
            .execute()
        )
        if result.data:
            self.featured = result.data

    async def fetch_latest(self) -> None:
        result = await (
            self.client.table("novels")
            .select("*, chapters(id, chapter_number, title, published_at)")
            .order("updated_at", ascending=False)
            .limit(LATEST_LIMIT)
            .execute()
        )
        if result.data is not None:
            self.latest = [
                {**novel, "chapters": latest_chapters(novel.get("chapters"))}
                for novel in result.data
            ]

    async def fetch_popular(self) -> None:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        week_ago = (now - timedelta(days=7)).isoformat()
        month_ago = (now - timedelta(days=30)).isoformat()
        results = await asyncio.gather(
            self.client.table("novels")
            .select(POPULAR_COLUMNS)
            .order("created_at", ascending=True)
            .limit(POPULAR_LIMIT)
            .execute(),
            self.client.table("novels")
            .select(POPULAR_COLUMNS)
            .gte("updated_at", week_ago)
            .order("updated_at", ascending=False)
            .limit(POPULAR_LIMIT)
            .execute(),
            self.client.table("novels")
            .select(POPULAR_COLUMNS)
            .gte("updated_at", month_ago)
            .order("updated_at", ascending=False)
            .limit(POPULAR_LIMIT)
            .execute(),
            return_exceptions=True,
        )
        # Each period stands on its own.
        for period, result in zip(("all", "weekly", "monthly"), results):
            if isinstance(result, SupabaseError):
                log.warning("popular query failed period=%s error=%s", period, result.message)
            elif isinstance(result, BaseException):
                raise result
            elif result.data is not None:
                self.popular[period] = result.data

    def seed_novel_store(self, novel_store) -> None:
        """Inject the listed novels into ``novel_store`` as partial entries."""
        for novel in self.latest + self.featured:
            novel_store.inject_novel(novel)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "featured": self.featured,
            "latest": self.latest,
            "popular": self.popular,
            "is_ready": self.is_ready,
            "error": self.error,
        }


def latest_chapters(chapters: Optional[List[Dict[str, Any]]],
                    count: int = LATEST_CHAPTERS) -> List[Dict[str, Any]]:
    """Return the ``count`` highest-numbered chapters, newest first."""
    ordered = sorted(chapters or [], key=lambda ch: ch.get("chapter_number") or 0, reverse=True)
    return ordered[:count]
