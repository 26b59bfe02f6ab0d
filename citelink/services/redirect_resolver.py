from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import unquote, urljoin, urlsplit

from citelink.services.http_fetcher import Fetcher, FetchResult
from citelink.services.page_metadata import extract_page_links
from citelink.services.url_canonicalizer import is_http_url, normalize_url

LOGGER = logging.getLogger("citelink.redirect_resolver")

WRAPPER_HOST_RE = re.compile(r"(^|\.)vertexaisearch\.cloud\.google\.com$", re.IGNORECASE)
WRAPPER_PATH_MARKER = "/grounding-api-redirect/"

# Decoded payloads are binary envelopes; stop at control bytes and
# replacement characters as well as the usual URL terminators.
_EMBEDDED_URL_RE = re.compile(r"https?://[^\s\"'<>)\x00-\x1f\x7f\ufffd]+", re.IGNORECASE)


def _host_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def points_at_wrapper(url: str) -> bool:
    return WRAPPER_HOST_RE.search(_host_of(url)) is not None


def is_wrapper_url(url: str) -> bool:
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    return WRAPPER_HOST_RE.search(host) is not None and WRAPPER_PATH_MARKER in parts.path


def decode_wrapper_payload(url: str) -> str | None:
    """Return the destination embedded in a wrapper URL's base64 path payload.

    The payload after the redirect marker is URL-safe base64, possibly
    percent-encoded and unpadded. Both the raw and the percent-decoded payload
    are tried; the longer decoding wins.
    """

    if not is_wrapper_url(url):
        return None
    path = urlsplit(url.strip()).path
    payload = path[path.index(WRAPPER_PATH_MARKER) + len(WRAPPER_PATH_MARKER) :]
    if not payload:
        return None

    raw_decoded = _b64_decode_text(payload)
    unquoted_decoded = _b64_decode_text(unquote(payload))
    decoded = raw_decoded if len(raw_decoded) >= len(unquoted_decoded) else unquoted_decoded
    for match in _EMBEDDED_URL_RE.finditer(decoded):
        candidate = match.group(0)
        if not points_at_wrapper(candidate):
            return candidate
    return None


def _b64_decode_text(payload: str) -> str:
    standard = payload.replace("-", "+").replace("_", "/")
    padded = standard + "=" * ((4 - len(standard) % 4) % 4)
    try:
        return base64.b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


@dataclass
class _ResolutionAttempt:
    url: str
    page: FetchResult | None = None
    unreachable: bool = False


_Strategy = Callable[[_ResolutionAttempt], Awaitable[str | None]]


class RedirectResolver:
    """Resolve grounding-redirect wrapper URLs to the publisher URL.

    Strategies run in order and the first non-``None`` result wins: embedded
    base64 payload, HTTP redirect target, then meta-refresh / anchor found in
    the wrapper page body. Anything that fails leaves the wrapper URL as is.
    """

    def __init__(self, *, fetcher: Fetcher, timeout_seconds: float = 7.0) -> None:
        self._fetcher = fetcher
        self._timeout_seconds = max(0.1, timeout_seconds)
        self._strategies: tuple[tuple[str, _Strategy], ...] = (
            ("payload", self._from_payload),
            ("http_redirect", self._from_http_redirect),
            ("page_body", self._from_page_body),
        )

    async def resolve_wrapper_url(self, url: str) -> str:
        if not is_wrapper_url(url):
            return url

        attempt = _ResolutionAttempt(url=url)
        for strategy_name, strategy in self._strategies:
            try:
                resolved = await strategy(attempt)
            except Exception:
                LOGGER.warning(
                    "wrapper resolution failed url=%s strategy=%s",
                    url,
                    strategy_name,
                    exc_info=True,
                )
                return url
            if resolved is not None:
                LOGGER.info(
                    "wrapper resolved url=%s resolved_url=%s strategy=%s",
                    url,
                    resolved,
                    strategy_name,
                )
                return resolved

        LOGGER.info("wrapper unresolved url=%s", url)
        return url

    async def _from_payload(self, attempt: _ResolutionAttempt) -> str | None:
        embedded = decode_wrapper_payload(attempt.url)
        if embedded is None:
            return None
        return normalize_url(embedded)

    async def _from_http_redirect(self, attempt: _ResolutionAttempt) -> str | None:
        result = await self._fetcher.fetch(
            attempt.url,
            method="HEAD",
            timeout_seconds=self._timeout_seconds,
        )
        if not result.reachable:
            result = await self._fetcher.fetch(
                attempt.url,
                method="GET",
                timeout_seconds=self._timeout_seconds,
            )
            if not result.reachable:
                attempt.unreachable = True
                return None
            attempt.page = result

        final_url = result.url or attempt.url
        if is_http_url(final_url) and not points_at_wrapper(final_url):
            return normalize_url(final_url)
        return None

    async def _from_page_body(self, attempt: _ResolutionAttempt) -> str | None:
        if attempt.unreachable:
            return None
        page = attempt.page
        if page is None:
            page = await self._fetcher.fetch(
                attempt.url,
                method="GET",
                timeout_seconds=self._timeout_seconds,
            )
        if not page.body:
            return None

        links = extract_page_links(page.body)
        if links.refresh_url:
            candidate = urljoin(page.url or attempt.url, links.refresh_url)
            if is_http_url(candidate) and not points_at_wrapper(candidate):
                return normalize_url(candidate)
        for href in links.anchor_hrefs:
            if is_http_url(href) and not points_at_wrapper(href):
                return normalize_url(href)
        return None
