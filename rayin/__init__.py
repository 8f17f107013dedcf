"""Rayin Translation: reading and publishing site for translated novels.

Persistence, authentication and file storage are delegated to a hosted
Supabase project; machine translation to OpenRouter's streaming chat
completion API. This package holds the logic in between:

* ``supabase.py`` – async client for the hosted tables, auth and object
  storage, with retry on transport errors and session persistence.

* ``stores/`` – cached views over the tables. ``NovelStore`` keeps
  novels and chapters with freshness windows and hover prefetching,
  ``HomeStore`` the home page listings and ``AuthStore`` the signed-in
  user and their role.

* ``translator.py`` – consumes the server-sent-event stream of a chat
  completion and appends the translated text as it arrives.

* ``presets.py`` and ``editor.py`` – translation presets and the chapter
  editing form used by administrators.

* ``middleware.py`` – answers crawler requests for novel pages with
  Open Graph metadata so link previews show the novel's cover.

* ``main.py`` – the FastAPI application; ``cli.py`` – the ``rayin``
  admin tool.
"""

__version__ = "0.1.0"
