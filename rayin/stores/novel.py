"""In-memory cache of novels and chapter contents.

Novels are cached by slug, chapters by ``"<slug>/<chapter number>"``.
Entries carry a ``fetched_at`` timestamp; novels older than five minutes
and chapters older than ten are refetched on the next read. A novel may
also be *partial*: seeded from the home page listing, it has an id and
its headline fields but not necessarily the full chapter list, so it is
always refetched before being treated as complete.

Prefetching (triggered when a reader hovers a link) schedules a
background fetch and remembers the key for ten seconds after it
finishes, so a burst of hover events costs a single request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from ..errors import SupabaseError
from ..logger import activity
from ..supabase import SupabaseClient

log = logging.getLogger("rayin.stores.novel")

NOVEL_TTL = 5 * 60
CHAPTER_TTL = 10 * 60
PREFETCH_GUARD = 10

CHAPTER_LIST_COLUMNS = "id, chapter_number, title, published_at, views"


def chapter_key(slug: str, chapter_number: Any) -> str:
    return f"{slug}/{chapter_number}"


class NovelStore:
    def __init__(self, client: SupabaseClient, clock: Callable[[], float] = time.time,
                 prefetch_guard: float = PREFETCH_GUARD) -> None:
        self.client = client
        self.clock = clock
        self.prefetch_guard = prefetch_guard
        self.novels: Dict[str, Dict[str, Any]] = {}
        self.chapter_content: Dict[str, Dict[str, Any]] = {}
        self.is_loading = False
        self._prefetched_slugs: Set[str] = set()
        self._prefetched_chapters: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def _age(self, entry: Dict[str, Any]) -> float:
        return self.clock() - entry.get("fetched_at", 0)

    def _novel_needs_fetch(self, entry: Optional[Dict[str, Any]]) -> bool:
        return entry is None or entry.get("is_partial", False) or self._age(entry) > NOVEL_TTL

    def _chapter_needs_fetch(self, entry: Optional[Dict[str, Any]]) -> bool:
        return entry is None or self._age(entry) > CHAPTER_TTL

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _release_later(self, keys: Set[str], key: str) -> Callable[[asyncio.Task], None]:
        def release(_task: asyncio.Task) -> None:
            asyncio.get_running_loop().call_later(self.prefetch_guard, keys.discard, key)
        return release

    # Prefetch

    def prefetch_novel(self, slug: Optional[str]) -> Optional[asyncio.Task]:
        if not slug or slug in self._prefetched_slugs:
            return None
        if not self._novel_needs_fetch(self.novels.get(slug)):
            return None
        self._prefetched_slugs.add(slug)
        activity("FETCH", "Prefetching Novel", slug=slug)
        task = self._spawn(self.fetch_novel(slug))
        task.add_done_callback(self._release_later(self._prefetched_slugs, slug))
        return task

    def prefetch_chapter(self, slug: Optional[str], chapter_number: Any) -> Optional[asyncio.Task]:
        if not slug or not chapter_number:
            return None
        key = chapter_key(slug, chapter_number)
        if key in self._prefetched_chapters:
            return None
        if not self._chapter_needs_fetch(self.chapter_content.get(key)):
            return None
        self._prefetched_chapters.add(key)
        activity("FETCH", "Prefetching Chapter", slug=slug, chapter_number=chapter_number)
        task = self._spawn(self.fetch_chapter(slug, chapter_number))
        task.add_done_callback(self._release_later(self._prefetched_chapters, key))
        return task

    # Fetch

    async def fetch_novel(self, slug: str) -> Optional[Dict[str, Any]]:
        """Return the novel and its chapter list, from cache when fresh.

        Backend errors are logged; the stale cache entry (if any) is
        returned in their place.
        """
        cached = self.novels.get(slug)
        if cached is not None:
            if not self._novel_needs_fetch(cached):
                activity("FETCH", "Novel Data Fully Cached", slug=slug)
                return cached
            activity("FETCH", "Novel Data Cached (Stale/Partial) - Background Refresh",
                     slug=slug, is_partial=cached.get("is_partial", False))
        else:
            self.is_loading = True

        activity("FETCH", "Novel Fetch Start", slug=slug)
        try:
            novel_result = await (
                self.client.table("novels")
                .select("*")
                .eq("slug", slug)
                .maybe_single()
                .execute()
            )
            novel = novel_result.data
            if not novel:
                return None

            chapter_result = await (
                self.client.table("chapters")
                .select(CHAPTER_LIST_COLUMNS)
                .eq("novel_id", novel["id"])
                .order("chapter_number", ascending=True)
                .execute()
            )
            entry = {
                **novel,
                "chapters": chapter_result.data or [],
                "fetched_at": self.clock(),
                "is_partial": False,
            }
            self.novels[slug] = entry
            return entry
        except SupabaseError as exc:
            log.error("novel fetch failed slug=%s error=%s", slug, exc.message)
            return cached
        finally:
            self.is_loading = False

    async def fetch_chapter(self, slug: str, chapter_number: Any) -> Optional[Dict[str, Any]]:
        key = chapter_key(slug, chapter_number)
        cached = self.chapter_content.get(key)
        if not self._chapter_needs_fetch(cached):
            activity("FETCH", "Chapter Cached", key=key)
            return cached

        # Partial entries already carry the novel id, which is all we need.
        novel = self.novels.get(slug)
        if novel is None:
            novel = await self.fetch_novel(slug)
            if novel is None:
                return None

        try:
            result = await (
                self.client.table("chapters")
                .select("*")
                .eq("novel_id", novel["id"])
                .eq("chapter_number", chapter_number)
                .maybe_single()
                .execute()
            )
        except SupabaseError as exc:
            log.error("chapter fetch failed key=%s error=%s", key, exc.message)
            return None

        data = result.data
        if not data:
            return None
        entry = {**data, "fetched_at": self.clock()}
        self.chapter_content[key] = entry
        self._spawn(self._increment_views(data))
        return entry

    async def _increment_views(self, chapter: Dict[str, Any]) -> None:
        try:
            await (
                self.client.table("chapters")
                .update({"views": (chapter.get("views") or 0) + 1})
                .eq("id", chapter["id"])
                .execute()
            )
        except SupabaseError as exc:
            log.debug("view increment failed chapter_id=%s error=%s", chapter.get("id"), exc.message)

    # Cache access

    def get_novel(self, slug: str) -> Optional[Dict[str, Any]]:
        return self.novels.get(slug)

    def get_chapter(self, slug: str, chapter_number: Any) -> Optional[Dict[str, Any]]:
        return self.chapter_content.get(chapter_key(slug, chapter_number))

    def inject_novel(self, data: Optional[Dict[str, Any]]) -> None:
        """Seed a partial entry, e.g. from the home page listing.

        Never replaces a fully loaded entry.
        """
        if not data or not data.get("slug"):
            return
        existing = self.novels.get(data["slug"])
        if existing is not None and not existing.get("is_partial", False):
            return
        chapters = data.get("chapters")
        self.novels[data["slug"]] = {
            **data,
            "chapters": chapters if isinstance(chapters, list) else [],
            "is_partial": True,
            "fetched_at": self.clock(),
        }

    async def drain(self) -> None:
        """Wait for background fetches and view updates to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
