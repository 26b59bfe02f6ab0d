from __future__ import annotations

import asyncio
import base64
from typing import TYPE_CHECKING

from citelink.services.redirect_resolver import (
    RedirectResolver,
    decode_wrapper_payload,
    is_wrapper_url,
    points_at_wrapper,
)

if TYPE_CHECKING:
    from tests.conftest import FakeFetcher

WRAPPER_PREFIX = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/"


def _wrapper_for(payload: bytes) -> str:
    token = base64.urlsafe_b64encode(payload).rstrip(b"=").decode("ascii")
    return f"{WRAPPER_PREFIX}{token}"


# Decodes to bytes with no embedded URL.
OPAQUE_WRAPPER = f"{WRAPPER_PREFIX}AUZZm9v"


def test_is_wrapper_url() -> None:
    assert is_wrapper_url(f"{WRAPPER_PREFIX}abc")
    assert is_wrapper_url("https://VertexAISearch.cloud.google.com/grounding-api-redirect/x")
    assert not is_wrapper_url("https://vertexaisearch.cloud.google.com/other/abc")
    assert not is_wrapper_url("https://example.com/grounding-api-redirect/abc")
    assert not is_wrapper_url("http://[::1/broken")


def test_points_at_wrapper_checks_host_only() -> None:
    assert points_at_wrapper("https://vertexaisearch.cloud.google.com/anything")
    assert not points_at_wrapper("https://publisher.example/vertexaisearch.cloud.google.com")


def test_decode_wrapper_payload_finds_embedded_url() -> None:
    wrapper = _wrapper_for(b"\x0a\x1chttps://publisher.example/article?id=9\x12\x02zz")

    assert decode_wrapper_payload(wrapper) == "https://publisher.example/article?id=9"


def test_decode_wrapper_payload_skips_urls_pointing_back_at_wrapper() -> None:
    wrapper = _wrapper_for(
        b"\x01https://vertexaisearch.cloud.google.com/grounding-api-redirect/zz"
        b"\x02https://real.example/p\x03"
    )

    assert decode_wrapper_payload(wrapper) == "https://real.example/p"


def test_decode_wrapper_payload_without_url_returns_none() -> None:
    assert decode_wrapper_payload(OPAQUE_WRAPPER) is None
    assert decode_wrapper_payload(WRAPPER_PREFIX) is None
    assert decode_wrapper_payload("https://example.com/not-a-wrapper") is None


def test_resolve_returns_non_wrapper_unchanged(fake_fetcher: FakeFetcher) -> None:
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url("https://example.com/a"))

    assert resolved == "https://example.com/a"
    assert fake_fetcher.calls == []


def test_resolve_prefers_payload_without_network(fake_fetcher: FakeFetcher) -> None:
    wrapper = _wrapper_for(b"\x0ahttps://publisher.example/story?utm_source=gemini\x10")
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url(wrapper))

    assert resolved == "https://publisher.example/story"
    assert fake_fetcher.calls == []


def test_resolve_follows_http_redirect(fake_fetcher: FakeFetcher) -> None:
    fake_fetcher.add(
        OPAQUE_WRAPPER,
        method="HEAD",
        final_url="https://publisher.example/final?gclid=1",
    )
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url(OPAQUE_WRAPPER))

    assert resolved == "https://publisher.example/final"
    assert fake_fetcher.calls == [("HEAD", OPAQUE_WRAPPER)]


def test_resolve_falls_back_to_meta_refresh_in_body(fake_fetcher: FakeFetcher) -> None:
    fake_fetcher.add(
        OPAQUE_WRAPPER,
        method="GET",
        body=(
            '<html><head><meta http-equiv="refresh" '
            "content=\"0; url='https://publisher.example/refreshed'\"></head></html>"
        ),
    )
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url(OPAQUE_WRAPPER))

    assert resolved == "https://publisher.example/refreshed"
    # The body fetched by the GET fallback is reused.
    assert fake_fetcher.calls == [("HEAD", OPAQUE_WRAPPER), ("GET", OPAQUE_WRAPPER)]


def test_resolve_uses_first_off_wrapper_anchor(fake_fetcher: FakeFetcher) -> None:
    fake_fetcher.add(OPAQUE_WRAPPER, method="HEAD")
    fake_fetcher.add(
        OPAQUE_WRAPPER,
        method="GET",
        body=(
            '<a href="https://vertexaisearch.cloud.google.com/help">help</a>'
            '<a href="/relative">rel</a>'
            '<a href="https://publisher.example/a?fbclid=x">go</a>'
            '<a href="https://publisher.example/b">other</a>'
        ),
    )
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url(OPAQUE_WRAPPER))

    assert resolved == "https://publisher.example/a"


def test_resolve_leaves_unreachable_wrapper_unchanged(fake_fetcher: FakeFetcher) -> None:
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url(OPAQUE_WRAPPER))

    assert resolved == OPAQUE_WRAPPER
    assert fake_fetcher.calls == [("HEAD", OPAQUE_WRAPPER), ("GET", OPAQUE_WRAPPER)]


def test_resolve_leaves_wrapper_unchanged_when_fetch_raises(fake_fetcher: FakeFetcher) -> None:
    fake_fetcher.raise_on(OPAQUE_WRAPPER, RuntimeError("boom"), method="HEAD")
    resolver = RedirectResolver(fetcher=fake_fetcher)

    resolved = asyncio.run(resolver.resolve_wrapper_url(OPAQUE_WRAPPER))

    assert resolved == OPAQUE_WRAPPER
