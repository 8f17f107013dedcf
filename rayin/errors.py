"""Exception types shared across the package."""

from __future__ import annotations

from typing import Any, Optional


class RayinError(Exception):
    """Base class for errors raised by this package."""


class SupabaseError(RayinError):
    """An error answer (or transport failure) from the hosted backend."""

    def __init__(self, message: str, status: Optional[int] = None,
                 code: Optional[str] = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details


class OperationTimeout(RayinError):
    def __init__(self, label: str, seconds: float) -> None:
        super().__init__(f"{label} timed out after {seconds:g}s")
        self.label = label
        self.seconds = seconds


class TranslationError(RayinError):
    """The translation endpoint could not be reached or answered with an error."""


class PresetError(RayinError):
    pass


class EditorError(RayinError):
    pass
