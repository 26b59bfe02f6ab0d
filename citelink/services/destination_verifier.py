from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from urllib.parse import quote, urljoin, urlsplit

from citelink.services.http_fetcher import Fetcher
from citelink.services.page_metadata import extract_page_links, looks_like_not_found
from citelink.services.url_canonicalizer import is_http_url, normalize_url

LOGGER = logging.getLogger("citelink.destination_verifier")

STOP_WORDS: frozenset[str] = frozenset(
    {
        "a",
        "an",
        "and",
        "authentic",
        "best",
        "classic",
        "dairy-free",
        "easy",
        "gluten",
        "gluten-free",
        "greek",
        "healthy",
        "in",
        "indian",
        "italian",
        "keto",
        "low",
        "low-carb",
        "mexican",
        "of",
        "on",
        "or",
        "paleo",
        "quick",
        "recipe",
        "recipes",
        "russian",
        "simple",
        "spicy",
        "thai",
        "the",
        "to",
        "vegan",
        "vegetarian",
        "with",
    }
)
SLUG_CORRECTIONS: dict[str, str] = {"ukranian": "ukrainian"}
MIN_SCORING_TOKEN_LENGTH = 3
MAX_SLUG_CANDIDATES = 3

_NON_SLUG_CHARS_RE = re.compile(r"[^a-z0-9/-]+")
_PATH_SPLIT_RE = re.compile(r"[/-]+")
_DIGITS_RE = re.compile(r"^\d+$")


def tokens_from_path(path: str) -> list[str]:
    lowered = _NON_SLUG_CHARS_RE.sub("-", path.lower())
    tokens: list[str] = []
    for raw_token in _PATH_SPLIT_RE.split(lowered):
        if not raw_token:
            continue
        token = SLUG_CORRECTIONS.get(raw_token, raw_token)
        if token in STOP_WORDS or _DIGITS_RE.match(token):
            continue
        tokens.append(token)
    return tokens


def score_text(text: str, tokens: Iterable[str]) -> int:
    haystack = text.lower()
    return sum(
        1 for token in tokens if len(token) >= MIN_SCORING_TOKEN_LENGTH and token in haystack
    )


def pick_best_by_tokens(candidates: list[str], tokens: list[str], *, base_url: str) -> str:
    """Return the candidate whose path contains the most meaningful tokens.

    Only a strictly higher score replaces the current best, so ties keep the
    first candidate encountered. With no candidates ``base_url`` is returned.
    """

    best = candidates[0] if candidates else base_url
    best_score = -1
    for candidate in candidates:
        try:
            absolute = urljoin(base_url, candidate)
            path = urlsplit(absolute).path
        except ValueError:
            continue
        score = score_text(path, tokens)
        if score > best_score:
            best_score = score
            best = absolute
    return best


def slug_candidates(path: str) -> list[str]:
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return []
    tokens = [token for token in segments[-1].split("-") if token]
    filtered = [token for token in tokens if token.lower() not in STOP_WORDS]

    candidates: list[str] = []

    def _add(slug: str) -> None:
        if slug and slug not in candidates:
            candidates.append(slug)

    if filtered:
        _add("-".join(filtered))
        if filtered[-1].endswith("s"):
            _add("-".join([*filtered[:-1], filtered[-1][:-1]]))
    if len(tokens) > 1:
        _add("-".join(tokens[1:]))
    return candidates[:MAX_SLUG_CANDIDATES]


@dataclass(frozen=True)
class SiteSearch:
    name: str
    host_pattern: re.Pattern[str]
    build_search_url: Callable[[str, str], str]
    select_candidates: Callable[[str, tuple[str, ...]], list[str]]

    def matches(self, host: str) -> bool:
        return self.host_pattern.search(host) is not None


def _wordpress_search_url(origin: str, query: str) -> str:
    return f"{origin}/?s={quote(query, safe='')}"


def _wordpress_candidates(origin: str, hrefs: tuple[str, ...]) -> list[str]:
    candidates: list[str] = []
    for href in hrefs:
        if not href.startswith(origin):
            continue
        without_fragment = href.split("#", 1)[0]
        if len(without_fragment) > len(origin) and without_fragment not in candidates:
            candidates.append(without_fragment)
    return candidates


_FOOD_RECIPE_RE = re.compile(r"^https?://www\.food\.com/recipe/", re.IGNORECASE)


def _food_search_url(_origin: str, query: str) -> str:
    return f"https://www.food.com/search/{quote(query, safe='')}"


def _food_candidates(_origin: str, hrefs: tuple[str, ...]) -> list[str]:
    return [href for href in hrefs if _FOOD_RECIPE_RE.match(href)]


SITE_SEARCHES: tuple[SiteSearch, ...] = (
    SiteSearch(
        name="wordpress",
        host_pattern=re.compile(r"thenewbaguette\.com$", re.IGNORECASE),
        build_search_url=_wordpress_search_url,
        select_candidates=_wordpress_candidates,
    ),
    SiteSearch(
        name="food_com",
        host_pattern=re.compile(r"^www\.food\.com$", re.IGNORECASE),
        build_search_url=_food_search_url,
        select_candidates=_food_candidates,
    ),
)


class DestinationVerifier:
    """Best-effort upgrade of a destination URL to the page it really lives at."""

    def __init__(
        self,
        *,
        fetcher: Fetcher,
        timeout_seconds: float = 7.0,
        probe_timeout_seconds: float = 5.0,
        site_searches: tuple[SiteSearch, ...] = SITE_SEARCHES,
    ) -> None:
        self._fetcher = fetcher
        self._timeout_seconds = max(0.1, timeout_seconds)
        self._probe_timeout_seconds = max(0.1, probe_timeout_seconds)
        self._site_searches = site_searches

    async def verify_or_improve(self, url: str) -> str:
        if not is_http_url(url):
            return url
        try:
            improved = await self._improve(url)
        except Exception:
            LOGGER.warning("destination verification failed url=%s", url, exc_info=True)
            return url
        if improved is None:
            return url
        if improved != url:
            LOGGER.info("destination improved url=%s improved_url=%s", url, improved)
        return improved

    async def _improve(self, url: str) -> str | None:
        page = await self._fetcher.fetch(url, method="GET", timeout_seconds=self._timeout_seconds)
        if not page.reachable:
            return None

        final_url = page.url or url
        if final_url != url:
            return normalize_url(final_url)

        canonical = extract_page_links(page.body).preferred_canonical
        if canonical:
            absolute = urljoin(url, canonical)
            if is_http_url(absolute):
                return normalize_url(absolute)

        if page.ok and not looks_like_not_found(page.body):
            return None

        recovered = await self._probe_slug_candidates(url)
        if recovered is not None:
            return recovered
        return await self._search_site(url)

    async def _probe_slug_candidates(self, url: str) -> str | None:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        for slug in slug_candidates(parts.path):
            candidate_url = f"{origin}/{slug}/"
            head = await self._fetcher.fetch(
                candidate_url,
                method="HEAD",
                timeout_seconds=self._probe_timeout_seconds,
            )
            if head.ok:
                return normalize_url(head.url or candidate_url)

            page = await self._fetcher.fetch(
                candidate_url,
                method="GET",
                timeout_seconds=self._timeout_seconds,
            )
            if not page.ok:
                continue
            destination = page.url or candidate_url
            canonical = extract_page_links(page.body).canonical_href
            if canonical:
                return normalize_url(urljoin(destination, canonical))
            return normalize_url(destination)
        return None

    async def _search_site(self, url: str) -> str | None:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        site_search = next((search for search in self._site_searches if search.matches(host)), None)
        if site_search is None:
            return None
        tokens = tokens_from_path(parts.path)
        if not tokens:
            return None

        origin = f"{parts.scheme}://{parts.netloc}"
        search_url = site_search.build_search_url(origin, " ".join(tokens))
        page = await self._fetcher.fetch(
            search_url,
            method="GET",
            timeout_seconds=self._timeout_seconds,
        )
        if not page.body:
            return None

        hrefs = extract_page_links(page.body).anchor_hrefs
        candidates = site_search.select_candidates(origin, hrefs)
        best = pick_best_by_tokens(candidates, tokens, base_url=url)
        if best == url:
            return None
        LOGGER.debug(
            "site search picked url=%s search=%s candidates=%s",
            best,
            site_search.name,
            len(candidates),
        )
        return normalize_url(best)
