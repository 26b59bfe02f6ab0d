from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from citelink.dependencies import reset_cached_dependencies
from citelink.main import create_app
from citelink.services.http_fetcher import FetchResult, HttpMethod


class FakeFetcher:
    """In-memory stand-in for ``UrlFetcher``; unknown URLs are unreachable."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], FetchResult | BaseException] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []

    def add(
        self,
        url: str,
        *,
        method: HttpMethod = "GET",
        status: int = 200,
        body: str | None = None,
        final_url: str | None = None,
    ) -> None:
        self.routes[(method, url)] = FetchResult(
            url=final_url or url,
            http_status=status,
            body=body,
            error_message=None if 200 <= status < 300 else f"http_{status}",
        )

    def raise_on(self, url: str, exc: BaseException, *, method: HttpMethod = "GET") -> None:
        self.routes[(method, url)] = exc

    async def fetch(
        self,
        url: str,
        *,
        method: HttpMethod = "GET",
        timeout_seconds: float,
    ) -> FetchResult:
        _ = timeout_seconds
        self.calls.append((method, url))
        delay = self.delays.get(url)
        if delay:
            await asyncio.sleep(delay)
        route = self.routes.get((method, url))
        if route is None:
            return FetchResult(
                url=url,
                http_status=None,
                body=None,
                error_message="network_error:ConnectionRefusedError",
            )
        if isinstance(route, BaseException):
            raise route
        return route


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture(autouse=True)
def _isolated_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("CITELINK_DATA_DIR", str(data_dir))
    monkeypatch.setenv("CITELINK_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    yield
    reset_cached_dependencies()


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
