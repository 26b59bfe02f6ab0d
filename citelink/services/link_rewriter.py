from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable

from citelink.services.destination_verifier import DestinationVerifier
from citelink.services.redirect_resolver import RedirectResolver, is_wrapper_url
from citelink.services.url_canonicalizer import normalize_url
from citelink.telemetry import TelemetryClient

LOGGER = logging.getLogger("citelink.link_rewriter")

MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
# Sentence punctuation directly after a bare URL is not part of it.
TEXT_URL_RE = re.compile(r"https?://[^\s)\]]*[^\s)\].,;:!?]", re.IGNORECASE)

UrlTransform = Callable[[str], Awaitable[str]]


def normalize_links_in_text(text: str) -> str:
    """Normalize every Markdown link target and bare URL in ``text``."""

    if not text:
        return text
    rewritten = MARKDOWN_LINK_RE.sub(
        lambda match: f"[{match.group(1)}]({normalize_url(match.group(2))})",
        text,
    )
    return TEXT_URL_RE.sub(lambda match: normalize_url(match.group(0)), rewritten)


def distinct_urls(text: str) -> list[str]:
    return list(dict.fromkeys(TEXT_URL_RE.findall(text)))


def substitute_urls(text: str, replacements: dict[str, str]) -> str:
    changed = {source: target for source, target in replacements.items() if target != source}
    if not changed:
        return text
    return TEXT_URL_RE.sub(lambda match: changed.get(match.group(0), match.group(0)), text)


class LinkRewriter:
    """Make the links in generated text point straight at publisher pages.

    Pass one is the pure normalization. Pass two resolves grounding-redirect
    wrappers concurrently. Pass three verifies a bounded number of the
    remaining URLs concurrently. Each URL is resolved independently: a failure
    or timeout on one leaves that URL unchanged and does not affect the rest.
    """

    def __init__(
        self,
        *,
        resolver: RedirectResolver,
        verifier: DestinationVerifier | None = None,
        verification_max_urls: int = 5,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._resolver = resolver
        self._verifier = verifier
        self._verification_max_urls = max(0, verification_max_urls)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    async def rewrite_links_to_direct(
        self,
        text: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        if not text:
            return text

        with self._telemetry.measure("links.rewrite") as outcome:
            rewritten = normalize_links_in_text(text)

            wrappers = [url for url in distinct_urls(rewritten) if is_wrapper_url(url)]
            wrapper_results = await self.map_concurrently(
                wrappers,
                self._resolver.resolve_wrapper_url,
                cancel_event=cancel_event,
            )
            rewritten = substitute_urls(rewritten, wrapper_results)
            outcome["wrapper_count"] = len(wrappers)
            outcome["wrappers_resolved"] = _count_changed(wrapper_results)

            if self._verifier is not None and self._verification_max_urls > 0:
                to_verify = [
                    url for url in distinct_urls(rewritten) if not is_wrapper_url(url)
                ][: self._verification_max_urls]
                verified_results = await self.map_concurrently(
                    to_verify,
                    self._verifier.verify_or_improve,
                    cancel_event=cancel_event,
                )
                rewritten = substitute_urls(rewritten, verified_results)
                outcome["verified_count"] = len(verified_results)
                outcome["verified_improved"] = _count_changed(verified_results)

            outcome["cancelled"] = cancel_event is not None and cancel_event.is_set()
        return rewritten

    async def map_concurrently(
        self,
        urls: Iterable[str],
        transform: UrlTransform,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, str]:
        return await map_urls_concurrently(urls, transform, cancel_event=cancel_event)


async def map_urls_concurrently(
    urls: Iterable[str],
    transform: UrlTransform,
    *,
    cancel_event: asyncio.Event | None = None,
) -> dict[str, str]:
    """Apply ``transform`` to each distinct URL at once.

    A URL whose transform raises, or is still pending when ``cancel_event`` is
    set, maps to itself.
    """

    ordered = list(dict.fromkeys(urls))
    if not ordered:
        return {}
    results = await asyncio.gather(
        *(_run_unless_cancelled(url, transform, cancel_event) for url in ordered),
        return_exceptions=True,
    )
    mapping: dict[str, str] = {}
    for url, result in zip(ordered, results, strict=True):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            LOGGER.warning(
                "url transform raised; keeping original url=%s error=%s",
                url,
                type(result).__name__,
                exc_info=result,
            )
            mapping[url] = url
            continue
        mapping[url] = result
    return mapping


async def _run_unless_cancelled(
    url: str,
    transform: UrlTransform,
    cancel_event: asyncio.Event | None,
) -> str:
    if cancel_event is None:
        return await transform(url)
    if cancel_event.is_set():
        return url

    work = asyncio.ensure_future(transform(url))
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        cancelled.cancel()
    if work.done():
        return work.result()
    work.cancel()
    LOGGER.debug("url transform short-circuited by cancellation url=%s", url)
    return url


def _count_changed(results: dict[str, str]) -> int:
    return sum(1 for source, target in results.items() if target != source)
