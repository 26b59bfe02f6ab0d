from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass
from typing import Literal, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from citelink.config import DEFAULT_USER_AGENT

LOGGER = logging.getLogger("citelink.http_fetcher")

HttpMethod = Literal["HEAD", "GET"]

MAX_BODY_BYTES = 2 * 1024 * 1024
# Extra wall-clock allowance on top of the socket timeout before the awaiting
# side gives up on a worker thread.
_ASYNC_TIMEOUT_GRACE_SECONDS = 0.5


@dataclass(frozen=True)
class FetchResult:
    url: str
    http_status: int | None
    body: str | None
    error_message: str | None

    @property
    def ok(self) -> bool:
        return self.http_status is not None and 200 <= self.http_status < 300

    @property
    def reachable(self) -> bool:
        return self.http_status is not None


class Fetcher(Protocol):
    async def fetch(
        self,
        url: str,
        *,
        method: HttpMethod = "GET",
        timeout_seconds: float,
    ) -> FetchResult:
        ...


class UrlFetcher:
    """Issue one bounded request per call, following redirects.

    Network and protocol failures come back as a ``FetchResult`` carrying an
    ``error_message``; nothing is raised to the caller. No connection is
    reused across calls.
    """

    def __init__(self, *, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._user_agent = user_agent.strip() or DEFAULT_USER_AGENT

    async def fetch(
        self,
        url: str,
        *,
        method: HttpMethod = "GET",
        timeout_seconds: float,
    ) -> FetchResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.fetch_sync,
                    url,
                    method=method,
                    timeout_seconds=timeout_seconds,
                ),
                timeout=timeout_seconds + _ASYNC_TIMEOUT_GRACE_SECONDS,
            )
        except TimeoutError:
            LOGGER.debug("fetch timed out method=%s url=%s", method, url)
            return FetchResult(url=url, http_status=None, body=None, error_message="timeout")

    def fetch_sync(
        self,
        url: str,
        *,
        method: HttpMethod = "GET",
        timeout_seconds: float,
    ) -> FetchResult:
        try:
            request = Request(
                url,
                headers={
                    "Accept": "text/html,application/xhtml+xml",
                    "User-Agent": self._user_agent,
                },
                method=method,
            )
            with urlopen(request, timeout=timeout_seconds) as response:
                body = None
                if method == "GET":
                    body = decode_body(
                        response.read(MAX_BODY_BYTES),
                        response.headers.get_content_charset(),
                    )
                return FetchResult(
                    url=response.geturl() or url,
                    http_status=getattr(response, "status", None),
                    body=body,
                    error_message=None,
                )
        except HTTPError as exc:
            status_code = int(exc.code)
            return FetchResult(
                url=exc.geturl() or url,
                http_status=status_code,
                body=_read_error_body(exc) if method == "GET" else None,
                error_message=f"http_{status_code}",
            )
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            LOGGER.debug(
                "fetch failed method=%s url=%s error=%s",
                method,
                url,
                type(exc).__name__,
            )
            return FetchResult(
                url=url,
                http_status=None,
                body=None,
                error_message=f"network_error:{type(exc).__name__}",
            )


def _read_error_body(exc: HTTPError) -> str | None:
    try:
        raw = exc.read(MAX_BODY_BYTES)
    except (OSError, ValueError):
        return None
    if not raw:
        return None
    charset = exc.headers.get_content_charset() if exc.headers is not None else None
    return decode_body(raw, charset)


def decode_body(raw: bytes, charset: str | None) -> str:
    """Decode with the declared charset; unknown labels fall back to utf-8."""

    encoding = "utf-8"
    if charset:
        try:
            encoding = codecs.lookup(charset).name
        except LookupError:
            LOGGER.debug("unknown charset label charset=%s; decoding as utf-8", charset)
    return raw.decode(encoding, errors="replace")
