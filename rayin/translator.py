"""Streaming machine translation through OpenRouter.

The chat-completion endpoint answers with a server-sent-event stream.
Each ``data:`` line holds a JSON chunk whose ``choices[0].delta`` carries
either reasoning text (for models that think out loud) or content
tokens. Content is appended to the chapter form as it arrives, so a long
chapter fills in progressively instead of after a multi-minute wait.
"""

from __future__ import annotations

import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, Optional, Tuple

import httpx

from .errors import TranslationError
from .logger import activity
from .presets import DEFAULT_MODEL, AISettings

log = logging.getLogger("rayin.translator")

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_SYSTEM_PROMPT = "Translate the following Japanese text to English faithfully."
APP_TITLE = "Novel Translator"
DONE_MARKER = "[DONE]"


class Phase(str, Enum):
    IDLE = ""
    CONNECTING = "connecting"
    THINKING = "thinking"
    STREAMING = "streaming"


def build_system_prompt(settings: AISettings, note: str = "") -> str:
    prompt = settings.system_prompt or DEFAULT_SYSTEM_PROMPT
    if note:
        prompt += f"\n\nCONTEXT / NOTES:\n{note}"
    return prompt


def build_request_body(settings: AISettings, source_text: str, note: str = "") -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": settings.model or DEFAULT_MODEL,
        "stream": True,
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "max_tokens": settings.max_tokens,
        "messages": [
            {"role": "system", "content": build_system_prompt(settings, note)},
            {"role": "user", "content": source_text},
        ],
    }
    # Optional parameters are only sent when they differ from the API default.
    if settings.top_k > 0:
        body["top_k"] = settings.top_k
    if settings.reasoning:
        body["reasoning"] = {"effort": "high"}
    return body


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one SSE line into a JSON chunk.

    Returns ``None`` for comments, blank lines, non-data fields, the
    ``[DONE]`` marker and payloads that are not valid JSON.
    """
    if not line.startswith("data: "):
        return None
    payload = line[6:]
    if payload.strip() == DONE_MARKER:
        return None
    try:
        chunk = json.loads(payload)
    except ValueError:
        log.warning("unparseable stream chunk payload=%r", payload[:200])
        return None
    return chunk if isinstance(chunk, dict) else None


def extract_delta(chunk: Dict[str, Any]) -> Tuple[str, str]:
    """Return ``(reasoning, content)`` text carried by a stream chunk."""
    choices = chunk.get("choices") or []
    delta = (choices[0] or {}).get("delta") if choices else None
    if not isinstance(delta, dict):
        return "", ""

    reasoning = ""
    raw = delta.get("reasoning_details") or delta.get("reasoning_content") or delta.get("reasoning")
    if isinstance(raw, str):
        reasoning = raw
    elif isinstance(raw, list):
        reasoning = "".join(
            item["content"] for item in raw
            if isinstance(item, dict) and isinstance(item.get("content"), str)
        )
    content = delta.get("content") or ""
    return reasoning, content if isinstance(content, str) else ""


def iter_deltas(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    for line in lines:
        chunk = parse_sse_line(line)
        if chunk is None:
            continue
        reasoning, content = extract_delta(chunk)
        if reasoning or content:
            yield reasoning, content


def format_elapsed(seconds: int) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s" if minutes > 0 else f"{secs}s"


class Translator:
    """Runs one translation at a time and exposes its progress.

    ``phase``, ``tokens``, ``reasoning`` and ``elapsed`` can be polled
    while :meth:`translate` is running.
    """

    def __init__(self, api_key: Optional[str], settings: Optional[AISettings] = None, *,
                 referer: Optional[str] = None, http: Optional[httpx.AsyncClient] = None,
                 url: str = OPENROUTER_URL, timeout: float = 600.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.api_key = api_key
        self.settings = settings or AISettings()
        self.referer = referer
        self.url = url
        self._http = http
        self._timeout = timeout
        self._clock = clock
        self.is_translating = False
        self.error = ""
        self.phase = Phase.IDLE
        self.tokens = 0
        self.reasoning = ""
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    @property
    def elapsed(self) -> int:
        if self._started is None:
            return 0
        end = self._stopped if self._stopped is not None else self._clock()
        return int(end - self._started)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": APP_TITLE,
            "Content-Type": "application/json",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        return headers

    async def stream(self, source_text: str, note: str = "") -> AsyncIterator[Tuple[str, str]]:
        """Yield ``(reasoning, content)`` pairs as the model produces them.

        Raises :class:`TranslationError` when the key is missing, the
        endpoint cannot be reached or it answers with an error status.
        """
        if not self.api_key:
            raise TranslationError("OpenRouter API key is not configured")

        body = build_request_body(self.settings, source_text, note)
        activity("TRANSLATION", "Request", model=body["model"], chars=len(source_text))
        http = self._http or httpx.AsyncClient(timeout=self._timeout)
        try:
            async with http.stream("POST", self.url, headers=self._headers(), json=body) as response:
                if response.status_code >= 400:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TranslationError(f"API Error: {response.status_code} - {error_body}")
                self.phase = Phase.THINKING
                async for line in response.aiter_lines():
                    for reasoning, content in iter_deltas([line]):
                        yield reasoning, content
        except httpx.HTTPError as exc:
            raise TranslationError(f"Translation request failed: {exc}") from exc
        finally:
            if self._http is None:
                await http.aclose()

    async def translate(self, form, source_text: str, note: str = "",
                        confirm_append: Optional[Callable[[], bool]] = None,
                        on_delta: Optional[Callable[[str, str], None]] = None) -> bool:
        """Translate ``source_text`` into ``form.content``.

        Existing content is kept and the translation appended after a
        blank line, but only if ``confirm_append()`` agrees. Failures are
        recorded in :attr:`error` rather than raised. ``on_delta`` is
        called with every ``(reasoning, content)`` pair. Returns ``True``
        when the stream completed.
        """
        if not source_text.strip():
            return False

        self.is_translating = True
        self.error = ""
        self.phase = Phase.CONNECTING
        self.tokens = 0
        self.reasoning = ""
        self._started = self._clock()
        self._stopped = None

        try:
            if form.content:
                if confirm_append is not None and not confirm_append():
                    return False
                form.content += "\n\n"

            async for reasoning, content in self.stream(source_text, note):
                if reasoning:
                    self.reasoning += reasoning
                if content:
                    if self.phase is not Phase.STREAMING:
                        self.phase = Phase.STREAMING
                    self.tokens += 1
                    form.content += content
                if on_delta is not None:
                    on_delta(reasoning, content)
            activity("TRANSLATION", "Finished", tokens=self.tokens, elapsed=self.elapsed)
            return True
        except TranslationError as exc:
            log.error("translation failed error=%s", exc)
            self.error = str(exc)
            return False
        finally:
            self.is_translating = False
            self.phase = Phase.IDLE
            self._stopped = self._clock()
