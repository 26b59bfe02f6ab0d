from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

from citelink.models.contracts import GroundingMetadata
from citelink.services.link_rewriter import map_urls_concurrently
from citelink.services.redirect_resolver import RedirectResolver
from citelink.services.url_canonicalizer import is_http_url, normalize_url

DEFAULT_MAX_SOURCES = 3
SOURCES_HEADING = "### Sources"

_TITLE_BRACKETS_RE = re.compile(r"[\[\]]")


@dataclass(frozen=True)
class GroundedSource:
    url: str
    title: str | None = None


def select_grounded_sources(
    metadata: GroundingMetadata | None,
    *,
    limit: int = DEFAULT_MAX_SOURCES,
) -> list[GroundedSource]:
    """Pick the cited sources from grounding metadata.

    Chunks referenced by supports are taken in first-seen order; when no
    support references a chunk, every chunk is taken in order. Sources are
    deduplicated by normalized URL and capped at ``limit``.
    """

    if limit <= 0:
        return []
    return dedupe_sources(collect_grounded_sources(metadata), limit=limit)


def collect_grounded_sources(metadata: GroundingMetadata | None) -> list[GroundedSource]:
    """Every cited source in selection order, deduplicated but not capped."""

    if metadata is None:
        return []
    chunks = metadata.grounding_chunks

    selected: list[int] = []
    for support in metadata.grounding_supports:
        for index in support.grounding_chunk_indices:
            if 0 <= index < len(chunks) and index not in selected:
                selected.append(index)
    if not selected:
        selected = list(range(len(chunks)))

    candidates: list[GroundedSource] = []
    for index in selected:
        web = chunks[index].web
        if web is None or not web.uri:
            continue
        candidates.append(GroundedSource(url=web.uri, title=_clean_title(web.title)))
    return dedupe_sources(candidates, limit=len(candidates))


def dedupe_sources(
    sources: list[GroundedSource],
    *,
    limit: int = DEFAULT_MAX_SOURCES,
) -> list[GroundedSource]:
    seen: set[str] = set()
    kept: list[GroundedSource] = []
    for source in sources:
        if len(kept) >= limit:
            break
        normalized = normalize_url(source.url)
        if not is_http_url(normalized) or normalized in seen:
            continue
        seen.add(normalized)
        kept.append(GroundedSource(url=normalized, title=source.title))
    return kept


async def resolve_grounded_sources(
    sources: list[GroundedSource],
    resolver: RedirectResolver,
    *,
    limit: int = DEFAULT_MAX_SOURCES,
    cancel_event: asyncio.Event | None = None,
) -> list[GroundedSource]:
    """Replace wrapper URLs with their destinations and keep ``limit`` distinct ones.

    Wrappers that resolve to an already kept destination free their slot, so
    the next pending candidate is resolved to fill it. Candidates are resolved
    in batches no larger than the number of open slots.
    """

    kept: list[GroundedSource] = []
    pending = list(sources)
    while pending and len(kept) < limit:
        batch, pending = pending[: limit - len(kept)], pending[limit - len(kept) :]
        resolved_urls = await map_urls_concurrently(
            [source.url for source in batch],
            resolver.resolve_wrapper_url,
            cancel_event=cancel_event,
        )
        resolved = [
            GroundedSource(url=resolved_urls[source.url], title=source.title)
            for source in batch
        ]
        kept = dedupe_sources([*kept, *resolved], limit=limit)
    return kept


def format_sources_markdown(sources: list[GroundedSource]) -> str:
    if not sources:
        return ""
    lines = [SOURCES_HEADING]
    for source in sources:
        if source.title:
            lines.append(f"- [{source.title}]({source.url})")
        else:
            lines.append(f"- {source.url}")
    return "\n".join(lines)


def _clean_title(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = " ".join(_TITLE_BRACKETS_RE.sub("", value).split())
    return cleaned or None
