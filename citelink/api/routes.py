from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from citelink.dependencies import (
    get_answer_pipeline,
    get_destination_verifier,
    get_link_rewriter,
    get_redirect_resolver,
)
from citelink.models.contracts import (
    NormalizeUrlsRequest,
    NormalizeUrlsResponse,
    PrepareAnswerRequest,
    PrepareAnswerResponse,
    RenderRequest,
    RenderResponse,
    ResolveUrlRequest,
    ResolveUrlResponse,
    RewriteLinksRequest,
    RewriteLinksResponse,
    SourceItem,
)
from citelink.services.answer_pipeline import AnswerPipeline
from citelink.services.destination_verifier import DestinationVerifier
from citelink.services.link_rewriter import LinkRewriter
from citelink.services.markdown_renderer import render_markdown
from citelink.services.redirect_resolver import RedirectResolver
from citelink.services.url_canonicalizer import normalize_url

router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.25


@contextlib.asynccontextmanager
async def _cancel_on_disconnect(request: Request) -> AsyncIterator[asyncio.Event]:
    cancel_event = asyncio.Event()

    async def _watch() -> None:
        while not cancel_event.is_set():
            if await request.is_disconnected():
                cancel_event.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(_watch())
    try:
        yield cancel_event
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


@router.post(
    "/render",
    response_model=RenderResponse,
    tags=["render"],
    operation_id="render_markdown",
)
def render(request: RenderRequest) -> RenderResponse:
    return RenderResponse(html=render_markdown(request.markdown))


@router.post(
    "/urls/normalize",
    response_model=NormalizeUrlsResponse,
    tags=["urls"],
    operation_id="normalize_urls",
)
def normalize_urls(request: NormalizeUrlsRequest) -> NormalizeUrlsResponse:
    return NormalizeUrlsResponse(urls=[normalize_url(url) for url in request.urls])


@router.post(
    "/urls/resolve",
    response_model=ResolveUrlResponse,
    tags=["urls"],
    operation_id="resolve_url",
)
async def resolve_url(
    request: ResolveUrlRequest,
    resolver: Annotated[RedirectResolver, Depends(get_redirect_resolver)],
    verifier: Annotated[DestinationVerifier, Depends(get_destination_verifier)],
) -> ResolveUrlResponse:
    resolved = await resolver.resolve_wrapper_url(normalize_url(request.url))
    if request.verify:
        resolved = await verifier.verify_or_improve(resolved)
    return ResolveUrlResponse(
        url=request.url,
        resolved_url=resolved,
        changed=resolved != request.url,
    )


@router.post(
    "/links/rewrite",
    response_model=RewriteLinksResponse,
    tags=["links"],
    operation_id="rewrite_links",
)
async def rewrite_links(
    request: RewriteLinksRequest,
    http_request: Request,
    link_rewriter: Annotated[LinkRewriter, Depends(get_link_rewriter)],
) -> RewriteLinksResponse:
    async with _cancel_on_disconnect(http_request) as cancel_event:
        text = await link_rewriter.rewrite_links_to_direct(
            request.text,
            cancel_event=cancel_event,
        )
    return RewriteLinksResponse(text=text)


@router.post(
    "/answers/prepare",
    response_model=PrepareAnswerResponse,
    tags=["answers"],
    operation_id="prepare_answer",
)
async def prepare_answer(
    request: PrepareAnswerRequest,
    http_request: Request,
    pipeline: Annotated[AnswerPipeline, Depends(get_answer_pipeline)],
) -> PrepareAnswerResponse:
    async with _cancel_on_disconnect(http_request) as cancel_event:
        prepared = await pipeline.prepare(
            request.text,
            grounding_metadata=request.grounding_metadata,
            resolve_sources=request.resolve_sources,
            cancel_event=cancel_event,
        )
    return PrepareAnswerResponse(
        markdown=prepared.markdown,
        html=prepared.html,
        sources=[SourceItem(url=source.url, title=source.title) for source in prepared.sources],
    )
