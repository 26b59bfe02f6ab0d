from __future__ import annotations

import asyncio
from dataclasses import dataclass

from citelink.models.contracts import GroundingMetadata
from citelink.services.grounded_sources import (
    GroundedSource,
    collect_grounded_sources,
    format_sources_markdown,
    resolve_grounded_sources,
    select_grounded_sources,
)
from citelink.services.link_rewriter import LinkRewriter
from citelink.services.markdown_renderer import render_markdown
from citelink.services.redirect_resolver import RedirectResolver
from citelink.telemetry import TelemetryClient


@dataclass(frozen=True)
class PreparedAnswer:
    markdown: str
    html: str
    sources: list[GroundedSource]


class AnswerPipeline:
    """Turn generated text plus grounding metadata into renderable HTML."""

    def __init__(
        self,
        *,
        link_rewriter: LinkRewriter,
        resolver: RedirectResolver,
        max_sources: int = 3,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._link_rewriter = link_rewriter
        self._resolver = resolver
        self._max_sources = max(0, max_sources)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    async def prepare(
        self,
        text: str,
        *,
        grounding_metadata: GroundingMetadata | None = None,
        resolve_sources: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> PreparedAnswer:
        with self._telemetry.measure(
            "answer.prepare",
            resolve_sources=resolve_sources,
        ) as outcome:
            rewritten = await self._link_rewriter.rewrite_links_to_direct(
                text,
                cancel_event=cancel_event,
            )

            skip_resolution = cancel_event is not None and cancel_event.is_set()
            if resolve_sources and not skip_resolution:
                sources = await resolve_grounded_sources(
                    collect_grounded_sources(grounding_metadata),
                    self._resolver,
                    limit=self._max_sources,
                    cancel_event=cancel_event,
                )
            else:
                sources = select_grounded_sources(grounding_metadata, limit=self._max_sources)
            outcome["source_count"] = len(sources)

            markdown = rewritten.rstrip()
            sources_markdown = format_sources_markdown(sources)
            if sources_markdown:
                markdown = f"{markdown}\n\n{sources_markdown}" if markdown else sources_markdown

            html = render_markdown(markdown)
        return PreparedAnswer(markdown=markdown, html=html, sources=sources)
