"""``web_fetch`` capability: download a page and return it as plain text.

The handler owns an ``httpx.AsyncClient`` and a :class:`TTLCache` of
fetched pages; both are created by :meth:`WebFetchHandler.startup` (or
lazily on first use) and released by :meth:`WebFetchHandler.aclose`.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx
from bs4 import BeautifulSoup

from ..dispatch import classify_exception
from ..handlers import ExecutionContext
from ..outcomes import ErrorInfo, ErrorKind, FailureOutcome, Outcome, SuccessOutcome
from ..settings import EngineSettings
from .cache import TTLCache

__all__ = ["WebFetchHandler", "html_to_text", "DEFAULT_HEADERS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "toolrelay/0.1 (web_fetch)",
    "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5",
}
_TRANSIENT_STATUS = frozenset({502, 503, 504})
_STRIP_TAGS = ["script", "style", "nav", "footer", "header", "noscript", "template"]


def html_to_text(html: str) -> str:
    """Convert HTML to readable plain text via BeautifulSoup."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    if soup.title:
        soup.title.decompose()

    text = soup.get_text(separator="\n", strip=True)

    # Collapse multiple blank lines
    collapsed: list[str] = []
    prev_blank = False
    for line in (line.strip() for line in text.splitlines()):
        if not line:
            if not prev_blank:
                collapsed.append("")
            prev_blank = True
        else:
            collapsed.append(line)
            prev_blank = False

    body = "\n".join(collapsed).strip()
    return f"# {title}\n\n{body}" if title else body


def _status_failure(url: str, response: httpx.Response) -> FailureOutcome:
    status = response.status_code
    reason = response.reason_phrase or "error"
    if status in (401, 403):
        kind, hint = ErrorKind.PERMISSION, "the page requires authentication"
    elif status in (404, 410):
        kind, hint = ErrorKind.NOT_FOUND, "check the URL for typos"
    else:
        kind, hint = ErrorKind.UNKNOWN, ""
    transient = status in _TRANSIENT_STATUS
    if transient:
        hint = "the server is temporarily unavailable; try again shortly"
    return FailureOutcome(
        ErrorInfo(
            kind=kind,
            message=f"HTTP {status}: {reason} for {url}",
            hint=hint,
            transient=transient,
            details={"status_code": status, "url": url},
        )
    )


class WebFetchHandler:
    """Fetch a URL and return its text content.

    Args:
        settings: Supplies cache size/TTL and the response size cap.
        client: Pre-built client (not closed by :meth:`aclose`).
        transport: Transport for the owned client, e.g. ``httpx.MockTransport``.
        cache: Page cache; one is built from ``settings`` when omitted.
    """

    timeout: float | None = 30.0
    transient_kinds: frozenset[ErrorKind] = frozenset({ErrorKind.CONNECTION_REFUSED, ErrorKind.TIMEOUT})

    def __init__(
        self,
        *,
        settings: EngineSettings | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: TTLCache[dict[str, Any]] | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self.cache: TTLCache[dict[str, Any]] = cache or TTLCache(
            max_entries=max(1, self._settings.web_cache_size),
            ttl=self._settings.web_cache_ttl,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def startup(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=DEFAULT_HEADERS,
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout or 30.0),
                transport=self._transport,
            )
            self._owns_client = True
            LOGGER.debug("web_fetch client started")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self.cache.clear()

    async def __aenter__(self) -> "WebFetchHandler":
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        await self.aclose()
        return False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(self, params: Mapping[str, Any], context: ExecutionContext) -> Outcome:
        url = str(params["url"]).strip()
        cached = self.cache.get(url)
        if cached is not None:
            LOGGER.debug("web_fetch cache hit for %s", url)
            return SuccessOutcome({**cached, "cached": True})

        await self.startup()
        assert self._client is not None
        try:
            async with self._client.stream("GET", url) as response:
                if response.status_code >= 400:
                    return _status_failure(url, response)
                body, truncated = await self._read_capped(response, context)
                content_type = response.headers.get("content-type", "")
                encoding = response.encoding or "utf-8"
                final_url = str(response.url)
                status = response.status_code
        except httpx.HTTPError as exc:
            error = classify_exception(exc)
            transient = error.transient or error.kind in self.transient_kinds
            LOGGER.warning("web_fetch of %s failed with %s: %s", url, error.kind.value, error.message)
            return FailureOutcome(
                ErrorInfo(error.kind, error.message, error.hint, transient, {**error.details, "url": url})
            )

        context.checkpoint()
        text = body.decode(encoding, errors="replace")
        if "html" in content_type.lower():
            text = html_to_text(text)
        payload = {
            "url": url,
            "final_url": final_url,
            "status_code": status,
            "content_type": content_type,
            "content": text,
            "length": len(text),
            "truncated": truncated,
            "cached": False,
        }
        self.cache.put(url, payload)
        return SuccessOutcome(payload)

    async def _read_capped(self, response: httpx.Response, context: ExecutionContext) -> tuple[bytes, bool]:
        limit = self._settings.web_max_bytes
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            context.checkpoint()
            remaining = limit - size
            if len(chunk) >= remaining:
                chunks.append(chunk[:remaining])
                size += remaining
                if len(chunk) > remaining:
                    LOGGER.info("Truncated response from %s at %d bytes", response.url, limit)
                    return b"".join(chunks), True
                continue
            chunks.append(chunk)
            size += len(chunk)
        return b"".join(chunks), False
