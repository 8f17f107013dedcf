"""
Entry point for Vercel.

Vercel's Python runtime imports this file and serves the ASGI object
called ``app``. The application is built from environment variables by
:func:`rayin.main.create_app`; ``vercel.json`` routes every path here so
that the link preview middleware sees novel pages before the SPA shell
is returned.
"""

from rayin.main import create_app

app = create_app()
