"""Cover image URL helpers."""

from __future__ import annotations

import re
from typing import Any, Optional

_PUBLIC_OBJECT = re.compile(r"/storage/v1/object/public/")
_RENDER_IMAGE = "/storage/v1/render/image/public/"


def optimized_image_url(url: Any, width: Optional[int] = None, height: Optional[int] = None,
                        quality: Optional[int] = None, format: Optional[str] = None,
                        resize: Optional[str] = None) -> str:
    """Rewrite a public storage URL to go through the image transform API.

    ``format`` is one of ``webp``, ``jpg``, ``png``, ``avif`` or
    ``origin`` and ``resize`` one of ``cover``, ``contain`` or ``fill``.
    URLs that do not point at public object storage are returned as-is;
    anything that is not a non-empty string becomes ``""``.
    """
    if not url or not isinstance(url, str):
        return ""
    if not _PUBLIC_OBJECT.search(url):
        return url

    new_url = _PUBLIC_OBJECT.sub(_RENDER_IMAGE, url, count=1)
    params = []
    for name, value in (("width", width), ("height", height), ("quality", quality),
                        ("format", format), ("resize", resize)):
        if value:
            params.append(f"{name}={value}")
    if params:
        separator = "&" if "?" in new_url else "?"
        new_url += separator + "&".join(params)
    return new_url
