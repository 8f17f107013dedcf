"""Chapter editing for administrators.

:class:`ChapterEditor` loads the novel and chapter being edited into a
:class:`ChapterForm`, saves it back, and tells the caller where to go
next as a :class:`Route`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from .errors import EditorError, SupabaseError
from .logger import activity
from .supabase import SupabaseClient
from .timeout import safe_refresh_session

log = logging.getLogger("rayin.editor")

NOVEL_COLUMNS = "id, title, slug, synopsis"
NEW_CHAPTER = "__new__"
FORM_FIELDS = ("title", "chapter_number", "content")


class Route(NamedTuple):
    name: str
    params: Dict[str, Any]


HOME = Route("home", {})


@dataclass
class ChapterForm:
    title: str = ""
    chapter_number: int = 1
    content: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChapterForm":
        extra = {k: v for k, v in row.items() if k not in FORM_FIELDS}
        return cls(
            title=row.get("title") or "",
            chapter_number=row.get("chapter_number") or 1,
            content=row.get("content") or "",
            extra=extra,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {**self.extra, "title": self.title,
                "chapter_number": self.chapter_number, "content": self.content}


def insert_text(content: str, start: int, end: int, prefix: str,
                suffix: str = "") -> Tuple[str, int, int]:
    """Wrap ``content[start:end]`` in ``prefix`` and ``suffix``.

    Returns the new text and the selection shifted to still cover the
    originally selected characters.
    """
    before, selection, after = content[:start], content[start:end], content[end:]
    new_content = before + prefix + selection + suffix + after
    return new_content, start + len(prefix), end + len(prefix)


class ChapterEditor:
    def __init__(self, client: SupabaseClient, chapter_id: Optional[str] = None) -> None:
        self.client = client
        self.chapter_id = chapter_id
        self.novel: Optional[Dict[str, Any]] = None
        self.novels: List[Dict[str, Any]] = []
        self.chapters: List[Dict[str, Any]] = []
        self.form = ChapterForm()
        self.saving = False
        self.error_message = ""

    @property
    def is_edit(self) -> bool:
        return bool(self.chapter_id)

    def _novel_route(self) -> Route:
        slug = (self.novel or {}).get("slug")
        return Route("novel", {"slug": slug}) if slug else HOME

    async def load_novels(self) -> List[Dict[str, Any]]:
        result = await self.client.table("novels").select(NOVEL_COLUMNS).order("title").execute()
        self.novels = result.data or []
        return self.novels

    async def fetch_chapters(self, novel_id: str) -> List[Dict[str, Any]]:
        result = await (
            self.client.table("chapters")
            .select("id, chapter_number, title")
            .eq("novel_id", novel_id)
            .order("chapter_number", ascending=False)
            .execute()
        )
        self.chapters = result.data or []
        return self.chapters

    async def load_novel_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        result = await (
            self.client.table("novels")
            .select(NOVEL_COLUMNS)
            .eq("slug", slug)
            .maybe_single()
            .execute()
        )
        if not result.data:
            return None
        self.novel = result.data
        await self.fetch_chapters(self.novel["id"])
        if not self.is_edit:
            last = await (
                self.client.table("chapters")
                .select("chapter_number")
                .eq("novel_id", self.novel["id"])
                .order("chapter_number", ascending=False)
                .limit(1)
                .maybe_single()
                .execute()
            )
            if last.data:
                self.form.chapter_number = last.data["chapter_number"] + 1
        return self.novel

    async def load_chapter(self, chapter_id: str) -> Optional[ChapterForm]:
        result = await (
            self.client.table("chapters").select("*").eq("id", chapter_id).maybe_single().execute()
        )
        if not result.data:
            return None
        self.chapter_id = chapter_id
        self.form = ChapterForm.from_row(result.data)
        novel_id = result.data.get("novel_id")
        if not self.novel or self.novel.get("id") != novel_id:
            novel = await (
                self.client.table("novels")
                .select(NOVEL_COLUMNS)
                .eq("id", novel_id)
                .maybe_single()
                .execute()
            )
            self.novel = novel.data
            if self.novel:
                await self.fetch_chapters(self.novel["id"])
        return self.form

    async def save(self) -> Optional[Route]:
        """Insert or update the chapter.

        Returns the novel page route on success. On failure the message
        is kept in :attr:`error_message` and ``None`` is returned.
        """
        self.saving = True
        self.error_message = ""
        try:
            if not self.novel or not self.novel.get("id"):
                raise EditorError("Please select a novel first.")
            await safe_refresh_session(self.client)
            payload = {
                **self.form.to_payload(),
                "novel_id": self.novel["id"],
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            if self.is_edit:
                await self.client.table("chapters").update(payload).eq("id", self.chapter_id).execute()
            else:
                await self.client.table("chapters").insert(payload).execute()
            activity("CHAPTER", "Saved", novel_id=self.novel["id"],
                     chapter_number=self.form.chapter_number, edit=self.is_edit)
            return self._novel_route()
        except (EditorError, SupabaseError) as exc:
            log.warning("chapter save failed error=%s", exc)
            self.error_message = str(exc)
            return None
        finally:
            self.saving = False

    async def delete_chapter(self) -> Route:
        if not self.chapter_id:
            raise EditorError("No chapter is loaded.")
        await self.client.table("chapters").delete().eq("id", self.chapter_id).execute()
        activity("CHAPTER", "Deleted", chapter_id=self.chapter_id)
        return self._novel_route()

    async def select_novel(self, novel_id: str) -> Optional[Route]:
        """Switch to another novel and return where to continue editing."""
        selected = next((n for n in self.novels if n.get("id") == novel_id), None)
        if selected is None:
            return None
        self.novel = selected
        await self.fetch_chapters(selected["id"])
        if self.chapters:
            # Sorted newest first.
            return Route("edit-chapter", {"chapter_id": self.chapters[0]["id"]})
        return Route("add-chapter", {"slug": selected.get("slug")})

    def select_chapter(self, value: str) -> Route:
        if value == NEW_CHAPTER:
            return Route("add-chapter", {"slug": (self.novel or {}).get("slug")})
        return Route("edit-chapter", {"chapter_id": value})
