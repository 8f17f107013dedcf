"""Cached views over the hosted tables."""

from .auth import AuthStore
from .home import HomeStore
from .novel import NovelStore

__all__ = ["AuthStore", "HomeStore", "NovelStore"]
