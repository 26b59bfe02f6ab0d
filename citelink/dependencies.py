from __future__ import annotations

from functools import lru_cache

from citelink.config import AppSettings, load_settings
from citelink.services.answer_pipeline import AnswerPipeline
from citelink.services.destination_verifier import DestinationVerifier
from citelink.services.http_fetcher import Fetcher, UrlFetcher
from citelink.services.link_rewriter import LinkRewriter
from citelink.services.redirect_resolver import RedirectResolver
from citelink.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_fetcher() -> Fetcher:
    return UrlFetcher(user_agent=get_settings().user_agent)


@lru_cache(maxsize=1)
def get_redirect_resolver() -> RedirectResolver:
    settings = get_settings()
    return RedirectResolver(
        fetcher=get_fetcher(),
        timeout_seconds=settings.resolved_http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_destination_verifier() -> DestinationVerifier:
    settings = get_settings()
    return DestinationVerifier(
        fetcher=get_fetcher(),
        timeout_seconds=settings.resolved_http_timeout_seconds,
        probe_timeout_seconds=settings.resolved_probe_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_link_rewriter() -> LinkRewriter:
    settings = get_settings()
    return LinkRewriter(
        resolver=get_redirect_resolver(),
        verifier=get_destination_verifier() if settings.verification_enabled else None,
        verification_max_urls=settings.verification_max_urls,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_answer_pipeline() -> AnswerPipeline:
    settings = get_settings()
    return AnswerPipeline(
        link_rewriter=get_link_rewriter(),
        resolver=get_redirect_resolver(),
        max_sources=settings.max_grounded_sources,
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    get_answer_pipeline.cache_clear()
    get_link_rewriter.cache_clear()
    get_destination_verifier.cache_clear()
    get_redirect_resolver.cache_clear()
    get_fetcher.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
