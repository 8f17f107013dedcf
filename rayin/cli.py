"""``rayin`` command line tool.

Administration happens here rather than in the browser: signing in,
managing translation presets, saving chapters and running streamed
translations straight into a chapter. The session is kept in
``RAYIN_SESSION_FILE`` between invocations.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from .config import Settings, load_settings
from .editor import ChapterEditor
from .errors import RayinError, SupabaseError
from .logger import configure_logging
from .main import create_app
from .presets import PresetManager
from .stores import AuthStore
from .supabase import FileSessionStorage, SupabaseClient
from .translator import Translator, format_elapsed


def _client(settings: Settings) -> SupabaseClient:
    return SupabaseClient.from_settings(settings, storage=FileSessionStorage(settings.session_file))


def _password(args: argparse.Namespace) -> str:
    return args.password or os.environ.get("RAYIN_PASSWORD") or getpass.getpass("Password: ")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rayin", description="Rayin Translation admin tool.")
    parser.add_argument("--debug", action="store_true", help="Show debug activity logs.")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the web application with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    subparsers.add_parser("diagnose", help="Check that the hosted backend is reachable.")

    superadmin = subparsers.add_parser("create-superadmin", help="Register the superadmin account.")
    superadmin.add_argument("--email", required=True)
    superadmin.add_argument("--username", required=True)
    superadmin.add_argument("--password")

    login = subparsers.add_parser("login", help="Sign in and remember the session.")
    login.add_argument("--email", required=True)
    login.add_argument("--password")

    subparsers.add_parser("logout", help="Forget the saved session.")
    subparsers.add_parser("whoami", help="Show the signed-in user.")

    presets = subparsers.add_parser("presets", help="List translation presets.")
    presets.add_argument("--slug", help="Novel whose preset should be selected.")

    save = subparsers.add_parser("chapter-save", help="Create or update a chapter from a text file.")
    save.add_argument("--slug", help="Novel to add the chapter to.")
    save.add_argument("--chapter-id", help="Existing chapter to update.")
    save.add_argument("--title")
    save.add_argument("--number", type=int)
    save.add_argument("--file", type=Path, required=True)

    delete = subparsers.add_parser("chapter-delete", help="Delete a chapter permanently.")
    delete.add_argument("--chapter-id", required=True)

    translate = subparsers.add_parser("translate", help="Stream a translation of a text file.")
    translate.add_argument("--input", type=Path, required=True)
    translate.add_argument("--note", default="", help="Context notes added to the system prompt.")
    translate.add_argument("--slug", help="Novel (selects its preset; required with --save).")
    translate.add_argument("--preset", help="Preset id to use instead of the automatic choice.")
    translate.add_argument("--save", action="store_true", help="Save the result as a chapter.")
    translate.add_argument("--chapter-id", help="Append to this chapter instead of adding one.")
    translate.add_argument("--title")
    translate.add_argument("--number", type=int)
    return parser


async def _diagnose(settings: Settings) -> int:
    client = _client(settings)
    try:
        print(f"Testing connection to {settings.supabase_url} ...")
        result = await client.table("profiles").select("count", count="exact", head=True).execute()
        print(f"Successfully accessed profiles table. Row count: {result.count}")
        return 0
    except SupabaseError as exc:
        print(f"Error accessing profiles table: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()


async def _create_superadmin(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    try:
        print(f"Registering user: {args.username} ({args.email})...")
        try:
            body = await client.auth.sign_up(args.email, _password(args),
                                             data={"username": args.username})
        except SupabaseError as exc:
            if "already registered" in exc.message:
                print("User already exists; using the existing account.")
                return 0
            print(f"Error creating user: {exc.message}", file=sys.stderr)
            return 1
        user = body.get("user") or body
        print(f"User created successfully. ID: {user.get('id')}")
        print("Set profiles.role = 'superadmin' for this user to grant admin rights.")
        return 0
    finally:
        await client.aclose()


async def _login(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    store = AuthStore(client)
    try:
        await store.check_user()
        await store.sign_in(args.email, _password(args))
        name = (store.profile or {}).get("username") or args.email
        role = "superadmin" if store.is_superadmin else "user"
        print(f"Signed in as {name} ({role}).")
        return 0
    finally:
        store.close()
        await client.aclose()


async def _logout(settings: Settings) -> int:
    client = _client(settings)
    try:
        await AuthStore(client).sign_out()
        print("Signed out.")
        return 0
    finally:
        await client.aclose()


async def _whoami(settings: Settings) -> int:
    client = _client(settings)
    store = AuthStore(client)
    try:
        user = await store.check_user()
        if not user:
            print("Not signed in.")
            return 1
        name = (store.profile or {}).get("username") or user.get("email")
        role = "superadmin" if store.is_superadmin else "user"
        print(f"{name} <{user.get('email')}> ({role})")
        return 0
    finally:
        store.close()
        await client.aclose()


async def _load_presets(client: SupabaseClient, slug: Optional[str]) -> PresetManager:
    novel = None
    if slug:
        result = await client.table("novels").select("id, title, slug").eq("slug", slug).maybe_single().execute()
        novel = result.data
        if novel is None:
            raise RayinError(f"Novel not found: {slug}")
    manager = PresetManager(client, novel)
    await manager.load_presets()
    return manager


async def _presets(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    try:
        manager = await _load_presets(client, args.slug)
        for preset in manager.presets:
            marker = "*" if preset.get("id") == manager.active_preset_id else " "
            default = " (default)" if preset.get("is_default") else ""
            print(f"{marker} {preset.get('id')}  {preset.get('name')}{default}  model={preset.get('model')}")
        if not manager.presets:
            print("No presets saved.")
        return 0
    finally:
        await client.aclose()


async def _editor_for(client: SupabaseClient, slug: Optional[str],
                      chapter_id: Optional[str]) -> ChapterEditor:
    editor = ChapterEditor(client, chapter_id=chapter_id)
    if chapter_id:
        if await editor.load_chapter(chapter_id) is None:
            raise RayinError(f"Chapter not found: {chapter_id}")
    elif slug:
        if await editor.load_novel_by_slug(slug) is None:
            raise RayinError(f"Novel not found: {slug}")
    else:
        raise RayinError("Pass --slug for a new chapter or --chapter-id to edit one.")
    return editor


async def _save(editor: ChapterEditor) -> int:
    route = await editor.save()
    if route is None:
        print(f"Save failed: {editor.error_message}", file=sys.stderr)
        return 1
    print(f"Saved chapter {editor.form.chapter_number} of {route.params.get('slug') or 'novel'}.")
    return 0


async def _chapter_save(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    try:
        await client.auth.get_session()
        editor = await _editor_for(client, args.slug, args.chapter_id)
        editor.form.content = args.file.read_text(encoding="utf-8")
        if args.title is not None:
            editor.form.title = args.title
        if args.number is not None:
            editor.form.chapter_number = args.number
        return await _save(editor)
    finally:
        await client.aclose()


async def _chapter_delete(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    try:
        await client.auth.get_session()
        editor = await _editor_for(client, None, args.chapter_id)
        await editor.delete_chapter()
        print(f"Deleted chapter {args.chapter_id}.")
        return 0
    finally:
        await client.aclose()


async def _translate(settings: Settings, args: argparse.Namespace) -> int:
    client = _client(settings)
    try:
        await client.auth.get_session()
        source = args.input.read_text(encoding="utf-8")
        manager = await _load_presets(client, args.slug)
        if args.preset:
            manager.select_preset(args.preset)

        if args.save:
            editor = await _editor_for(client, args.slug, args.chapter_id)
        else:
            editor = ChapterEditor(client)
        if args.title is not None:
            editor.form.title = args.title
        if args.number is not None:
            editor.form.chapter_number = args.number

        translator = Translator(settings.openrouter_api_key, manager.settings,
                                referer=settings.site_origin)

        def echo(reasoning: str, content: str) -> None:
            if content:
                sys.stdout.write(content)
                sys.stdout.flush()

        ok = await translator.translate(editor.form, source, args.note, on_delta=echo)
        print()
        if not ok:
            print(f"Translation failed: {translator.error}", file=sys.stderr)
            return 1
        print(f"[rayin] {translator.tokens} tokens in {format_elapsed(translator.elapsed)}",
              file=sys.stderr)
        if args.save:
            return await _save(editor)
        return 0
    finally:
        await client.aclose()


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = load_settings()
    configure_logging(settings.debug or args.debug)

    if args.command == "serve":
        uvicorn.run(create_app(settings), host=args.host, port=args.port)
        return 0

    handlers = {
        "diagnose": lambda: _diagnose(settings),
        "create-superadmin": lambda: _create_superadmin(settings, args),
        "login": lambda: _login(settings, args),
        "logout": lambda: _logout(settings),
        "whoami": lambda: _whoami(settings),
        "presets": lambda: _presets(settings, args),
        "chapter-save": lambda: _chapter_save(settings, args),
        "chapter-delete": lambda: _chapter_delete(settings, args),
        "translate": lambda: _translate(settings, args),
    }
    try:
        return asyncio.run(handlers[args.command]())
    except RayinError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
