from __future__ import annotations

import asyncio

import pytest

from rayin.editor import HOME, NEW_CHAPTER, ChapterEditor, ChapterForm, Route, insert_text
from rayin.errors import EditorError


def _seed(backend) -> None:
    backend.add(
        "novels",
        {"id": "n1", "slug": "alpha", "title": "Alpha", "synopsis": ""},
        {"id": "n2", "slug": "beta", "title": "Beta", "synopsis": ""},
    )
    backend.add(
        "chapters",
        {"id": "c1", "novel_id": "n1", "chapter_number": 1, "title": "One", "content": "First."},
        {"id": "c2", "novel_id": "n1", "chapter_number": 2, "title": "Two", "content": "Second."},
    )


def test_insert_text_wraps_selection() -> None:
    content, start, end = insert_text("Hello world", 6, 11, "**", "**")
    assert content == "Hello **world**"
    assert content[start:end] == "world"


def test_insert_text_at_cursor() -> None:
    content, start, end = insert_text("ab", 1, 1, "---\n")
    assert content == "a---\nb"
    assert (start, end) == (5, 5)


def test_form_round_trips_extra_columns() -> None:
    form = ChapterForm.from_row({"id": "c1", "title": "T", "chapter_number": 3,
                                 "content": None, "views": 9})
    assert form.content == ""
    assert form.to_payload() == {"id": "c1", "views": 9, "title": "T",
                                 "chapter_number": 3, "content": ""}


def test_new_chapter_number_follows_last(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client())
        novel = await editor.load_novel_by_slug("alpha")
        return editor, novel

    editor, novel = asyncio.run(scenario())
    assert novel["id"] == "n1"
    assert editor.form.chapter_number == 3
    assert [c["chapter_number"] for c in editor.chapters] == [2, 1]


def test_first_chapter_of_empty_novel(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client())
        await editor.load_novel_by_slug("beta")
        return editor

    editor = asyncio.run(scenario())
    assert editor.form.chapter_number == 1
    assert editor.chapters == []


def test_unknown_slug(backend) -> None:
    async def scenario():
        return await ChapterEditor(backend.client()).load_novel_by_slug("nope")

    assert asyncio.run(scenario()) is None


def test_save_without_novel_sets_error(backend) -> None:
    async def scenario():
        editor = ChapterEditor(backend.client())
        return editor, await editor.save()

    editor, route = asyncio.run(scenario())
    assert route is None
    assert editor.error_message == "Please select a novel first."
    assert not editor.saving
    assert backend.requests == []


def test_save_inserts_new_chapter(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client())
        await editor.load_novel_by_slug("alpha")
        editor.form.title = "Three"
        editor.form.content = "Third."
        return await editor.save()

    route = asyncio.run(scenario())
    assert route == Route("novel", {"slug": "alpha"})
    row = backend.tables["chapters"][-1]
    assert (row["novel_id"], row["chapter_number"], row["title"]) == ("n1", 3, "Three")
    assert "updated_at" in row


def test_save_updates_existing_chapter(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client(), chapter_id="c2")
        form = await editor.load_chapter("c2")
        form.content += " Edited."
        return editor, await editor.save()

    editor, route = asyncio.run(scenario())
    assert editor.novel["slug"] == "alpha"
    assert route == Route("novel", {"slug": "alpha"})
    row = next(r for r in backend.tables["chapters"] if r["id"] == "c2")
    assert row["content"] == "Second. Edited."
    assert len(backend.tables["chapters"]) == 2


def test_save_failure_is_reported(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client(max_retries=1))
        await editor.load_novel_by_slug("alpha")
        backend.fail("/rest/v1/chapters", status=403)
        return editor, await editor.save()

    editor, route = asyncio.run(scenario())
    assert route is None
    assert editor.error_message == "injected 403"


def test_delete_chapter(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client(), chapter_id="c1")
        await editor.load_chapter("c1")
        return await editor.delete_chapter()

    route = asyncio.run(scenario())
    assert route == Route("novel", {"slug": "alpha"})
    assert [r["id"] for r in backend.tables["chapters"]] == ["c2"]


def test_delete_without_chapter_raises(backend) -> None:
    with pytest.raises(EditorError):
        asyncio.run(ChapterEditor(backend.client()).delete_chapter())


def test_select_novel_routes(backend) -> None:
    _seed(backend)

    async def scenario():
        editor = ChapterEditor(backend.client())
        await editor.load_novels()
        with_chapters = await editor.select_novel("n1")
        without = await editor.select_novel("n2")
        missing = await editor.select_novel("n9")
        return editor, with_chapters, without, missing

    editor, with_chapters, without, missing = asyncio.run(scenario())
    assert [n["title"] for n in editor.novels] == ["Alpha", "Beta"]
    assert with_chapters == Route("edit-chapter", {"chapter_id": "c2"})
    assert without == Route("add-chapter", {"slug": "beta"})
    assert missing is None


def test_select_chapter_routes(backend) -> None:
    editor = ChapterEditor(backend.client())
    editor.novel = {"id": "n1", "slug": "alpha"}
    assert editor.select_chapter(NEW_CHAPTER) == Route("add-chapter", {"slug": "alpha"})
    assert editor.select_chapter("c1") == Route("edit-chapter", {"chapter_id": "c1"})


def test_route_without_novel_is_home(backend) -> None:
    editor = ChapterEditor(backend.client())
    assert editor._novel_route() == HOME
