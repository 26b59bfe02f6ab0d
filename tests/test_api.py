from __future__ import annotations

import base64
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.testclient import TestClient

from citelink.dependencies import (
    get_answer_pipeline,
    get_destination_verifier,
    get_link_rewriter,
    get_redirect_resolver,
)
from citelink.services.answer_pipeline import AnswerPipeline
from citelink.services.destination_verifier import DestinationVerifier
from citelink.services.link_rewriter import LinkRewriter
from citelink.services.redirect_resolver import RedirectResolver

if TYPE_CHECKING:
    from tests.conftest import FakeFetcher


def _wrapper_for(destination: str) -> str:
    payload = b"\x0a" + destination.encode("ascii") + b"\x10"
    token = base64.urlsafe_b64encode(payload).rstrip(b"=").decode("ascii")
    return f"https://vertexaisearch.cloud.google.com/grounding-api-redirect/{token}"


def _use_fetcher(client: TestClient, fetcher: FakeFetcher) -> None:
    app = client.app
    assert isinstance(app, FastAPI)
    resolver = RedirectResolver(fetcher=fetcher, timeout_seconds=1.0)
    verifier = DestinationVerifier(fetcher=fetcher, timeout_seconds=1.0, probe_timeout_seconds=1.0)
    rewriter = LinkRewriter(resolver=resolver, verifier=verifier)
    pipeline = AnswerPipeline(link_rewriter=rewriter, resolver=resolver)
    app.dependency_overrides[get_redirect_resolver] = lambda: resolver
    app.dependency_overrides[get_destination_verifier] = lambda: verifier
    app.dependency_overrides[get_link_rewriter] = lambda: rewriter
    app.dependency_overrides[get_answer_pipeline] = lambda: pipeline


def test_health_endpoint_echoes_request_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-42"


def test_request_id_is_generated_when_missing(client: TestClient) -> None:
    response = client.get("/health")

    assert response.headers["X-Request-ID"]


def test_startup_configures_log_files(client: TestClient, tmp_path: Path) -> None:
    client.get("/health")

    log_dir = tmp_path / "runtime-data" / "logs"
    assert (log_dir / "citelink.log").exists()
    assert (log_dir / "citelink-telemetry.log").exists()


def test_render_endpoint(client: TestClient) -> None:
    response = client.post("/render", json={"markdown": "Hi **there** <b>"})

    assert response.status_code == 200
    assert response.json() == {
        "html": '<p class="mt-3">Hi <strong>there</strong> &lt;b&gt;</p>',
    }


def test_render_rejects_unknown_fields(client: TestClient) -> None:
    response = client.post("/render", json={"markdown": "x", "unsafe": True})

    assert response.status_code == 422


def test_normalize_urls_endpoint(client: TestClient) -> None:
    response = client.post(
        "/urls/normalize",
        json={
            "urls": [
                "https://example.com/x?utm_source=foo&b=1",
                "https://google.com/url?q=https%3A%2F%2Freal.example.com%2Fpage",
                "mailto:someone@example.com",
            ]
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "urls": [
            "https://example.com/x?b=1",
            "https://real.example.com/page",
            "mailto:someone@example.com",
        ]
    }


def test_resolve_url_endpoint_unwraps_wrapper(client: TestClient, fake_fetcher: FakeFetcher) -> None:
    _use_fetcher(client, fake_fetcher)
    wrapper = _wrapper_for("https://publisher.example/story?utm_source=x")

    response = client.post("/urls/resolve", json={"url": wrapper})

    assert response.status_code == 200
    assert response.json() == {
        "url": wrapper,
        "resolved_url": "https://publisher.example/story",
        "changed": True,
    }
    assert fake_fetcher.calls == []


def test_resolve_url_endpoint_can_verify(client: TestClient, fake_fetcher: FakeFetcher) -> None:
    _use_fetcher(client, fake_fetcher)
    fake_fetcher.add(
        "https://site.example/p",
        body='<link rel="canonical" href="https://site.example/posts/p">',
    )

    response = client.post("/urls/resolve", json={"url": "https://site.example/p", "verify": True})

    assert response.json()["resolved_url"] == "https://site.example/posts/p"


def test_rewrite_links_endpoint(client: TestClient, fake_fetcher: FakeFetcher) -> None:
    _use_fetcher(client, fake_fetcher)
    wrapper = _wrapper_for("https://publisher.example/story")
    fake_fetcher.add("https://publisher.example/story", body="<p>story</p>")

    response = client.post("/links/rewrite", json={"text": f"See [it]({wrapper})."})

    assert response.status_code == 200
    assert response.json() == {"text": "See [it](https://publisher.example/story)."}


def test_prepare_answer_endpoint(client: TestClient, fake_fetcher: FakeFetcher) -> None:
    _use_fetcher(client, fake_fetcher)
    wrapper = _wrapper_for("https://news.example/a")

    response = client.post(
        "/answers/prepare",
        json={
            "text": "Answer.",
            "grounding_metadata": {
                "groundingChunks": [{"web": {"uri": wrapper, "title": "News"}}],
                "groundingSupports": [{"groundingChunkIndices": [0]}],
            },
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["sources"] == [{"url": "https://news.example/a", "title": "News"}]
    assert payload["markdown"] == "Answer.\n\n### Sources\n- [News](https://news.example/a)"
    assert 'href="https://news.example/a"' in payload["html"]
