from __future__ import annotations

import pytest

from rayin import cli
from rayin.supabase import MemorySessionStorage


@pytest.fixture
def shared_backend(backend, monkeypatch):
    """Route every CLI command to the in-memory backend with one session store."""
    storage = MemorySessionStorage()
    monkeypatch.setattr(cli, "_client", lambda settings: backend.client(storage=storage))
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("RAYIN_PASSWORD", raising=False)
    return backend


def test_parser_requires_file_for_chapter_save() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["chapter-save", "--slug", "alpha"])


def test_parser_serve_defaults() -> None:
    args = cli.build_parser().parse_args(["serve"])
    assert (args.host, args.port) == ("127.0.0.1", 8000)


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "usage: rayin" in capsys.readouterr().out


def test_diagnose_reports_row_count(shared_backend, capsys) -> None:
    shared_backend.add("profiles", {"id": "a"}, {"id": "b"})
    assert cli.main(["diagnose"]) == 0
    assert "Row count: 2" in capsys.readouterr().out


def test_diagnose_failure(shared_backend, capsys) -> None:
    shared_backend.fail("/rest/v1/profiles", status=401)
    assert cli.main(["diagnose"]) == 1
    assert "injected 401" in capsys.readouterr().err


def test_login_whoami_logout(shared_backend, capsys) -> None:
    user = shared_backend.add_user("admin@example.com", "secret")
    shared_backend.add("profiles", {"id": user["id"], "role": "superadmin", "username": "admin"})

    assert cli.main(["login", "--email", "admin@example.com", "--password", "secret"]) == 0
    assert "Signed in as admin (superadmin)." in capsys.readouterr().out

    assert cli.main(["whoami"]) == 0
    assert "admin <admin@example.com> (superadmin)" in capsys.readouterr().out

    assert cli.main(["logout"]) == 0
    assert cli.main(["whoami"]) == 1
    assert "Not signed in." in capsys.readouterr().out


def test_login_with_wrong_password(shared_backend, capsys) -> None:
    shared_backend.add_user("admin@example.com", "secret")
    assert cli.main(["login", "--email", "admin@example.com", "--password", "nope"]) == 1
    assert "Invalid login credentials" in capsys.readouterr().err


def test_create_superadmin(shared_backend, monkeypatch, capsys) -> None:
    monkeypatch.setenv("RAYIN_PASSWORD", "secret")
    assert cli.main(["create-superadmin", "--email", "boss@example.com", "--username", "boss"]) == 0
    assert "User created successfully" in capsys.readouterr().out
    assert shared_backend.users["boss@example.com"]["user"]["user_metadata"] == {"username": "boss"}

    assert cli.main(["create-superadmin", "--email", "boss@example.com", "--username", "boss"]) == 0
    assert "already exists" in capsys.readouterr().out


def test_chapter_save_and_delete(shared_backend, tmp_path, capsys) -> None:
    shared_backend.add("novels", {"id": "n1", "slug": "alpha", "title": "Alpha"})
    shared_backend.add("chapters", {"id": "c1", "novel_id": "n1", "chapter_number": 1, "title": "One"})
    text = tmp_path / "two.txt"
    text.write_text("Second chapter.", encoding="utf-8")

    assert cli.main(["chapter-save", "--slug", "alpha", "--title", "Two", "--file", str(text)]) == 0
    assert "Saved chapter 2 of alpha." in capsys.readouterr().out
    saved = shared_backend.tables["chapters"][-1]
    assert (saved["chapter_number"], saved["content"]) == (2, "Second chapter.")

    assert cli.main(["chapter-delete", "--chapter-id", "c1"]) == 0
    assert [row["id"] for row in shared_backend.tables["chapters"]] == [saved["id"]]


def test_chapter_save_unknown_novel(shared_backend, tmp_path, capsys) -> None:
    text = tmp_path / "x.txt"
    text.write_text("x", encoding="utf-8")
    assert cli.main(["chapter-save", "--slug", "missing", "--file", str(text)]) == 1
    assert "Novel not found: missing" in capsys.readouterr().err


def test_presets_listing(shared_backend, capsys) -> None:
    shared_backend.add("translation_settings",
                       {"id": "p1", "name": "Standard", "is_default": True, "model": "m"},
                       {"id": "p2", "name": "Casual", "is_default": False, "model": "n"})
    assert cli.main(["presets"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith("* p1  Standard (default)")
    assert out[1].startswith("  p2  Casual")


def test_translate_without_key_fails(shared_backend, tmp_path, capsys) -> None:
    source = tmp_path / "ja.txt"
    source.write_text("こんにちは", encoding="utf-8")
    assert cli.main(["translate", "--input", str(source)]) == 1
    assert "OpenRouter API key is not configured" in capsys.readouterr().err
