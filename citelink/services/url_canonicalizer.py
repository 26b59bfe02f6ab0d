from __future__ import annotations

import logging
import re
from urllib.parse import unquote, unquote_plus, urlsplit, urlunsplit

LOGGER = logging.getLogger("citelink.url_canonicalizer")

MAX_UNWRAP_ITERATIONS = 3

TRACKING_QUERY_PARAMS: frozenset[str] = frozenset(
    {
        "bih",
        "biw",
        "ei",
        "fbclid",
        "gclid",
        "igshid",
        "mc_cid",
        "mc_eid",
        "mkt_tok",
        "oq",
        "opi",
        "ref_src",
        "rlz",
        "sa",
        "sca_esv",
        "sclient",
        "source",
        "usg",
        "ved",
    }
)

# Scanned in order; the first parameter whose decoded value is an absolute
# http(s) URL replaces the outer URL.
REDIRECT_QUERY_PARAMS: tuple[str, ...] = (
    "url",
    "q",
    "u",
    "target",
    "dest",
    "destination",
    "to",
    "redirect",
    "r",
    "link",
    "ru",
)

SEARCH_ENGINE_REDIRECT_HOSTS: tuple[str, ...] = ("google.com", "googleusercontent.com")

_HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


def is_http_url(value: str) -> bool:
    return bool(_HTTP_URL_RE.match(value))


def is_tracking_param(name: str) -> bool:
    lowered = name.strip().lower()
    return lowered.startswith("utm_") or lowered in TRACKING_QUERY_PARAMS


def normalize_url(value: str) -> str:
    """Strip tracking parameters and unwrap query-parameter redirects.

    Non-http(s) input is returned untouched. Nested redirects are unwrapped up
    to ``MAX_UNWRAP_ITERATIONS`` times; a parse failure stops the loop and the
    last successfully computed URL is returned. Never raises and never touches
    the network.
    """

    current = value.strip()
    if not is_http_url(current):
        return value

    for iteration in range(MAX_UNWRAP_ITERATIONS):
        try:
            stripped, pairs = _strip_tracking(current)
        except ValueError:
            LOGGER.debug("url normalization aborted on unparsable url=%s", current)
            if iteration == 0:
                return value
            break

        extracted = _extract_redirect_target(stripped, pairs)
        if extracted is not None:
            current = extracted
            continue

        current = stripped
        break
    else:
        # Unwrapping stops at the cap; the last extracted URL still loses its trackers.
        try:
            current, _ = _strip_tracking(current)
        except ValueError:
            LOGGER.debug("tracking strip skipped on unparsable url=%s", current)

    return current


def _strip_tracking(url: str) -> tuple[str, list[tuple[str, str]]]:
    parts = urlsplit(url)
    # Accessing the port validates it and raises ValueError on garbage.
    _ = parts.port
    host = parts.hostname
    if not host:
        raise ValueError("url has no host")

    kept_segments: list[str] = []
    pairs: list[tuple[str, str]] = []
    for segment in parts.query.split("&"):
        if not segment:
            continue
        raw_key, _, raw_value = segment.partition("=")
        key = unquote_plus(raw_key)
        if is_tracking_param(key):
            continue
        kept_segments.append(segment)
        pairs.append((key, unquote_plus(raw_value)))

    netloc = _lowercase_host(parts.netloc)
    path = parts.path or "/"
    rebuilt = urlunsplit(
        (parts.scheme.lower(), netloc, path, "&".join(kept_segments), parts.fragment)
    )
    return rebuilt, pairs


def _lowercase_host(netloc: str) -> str:
    userinfo, at, hostport = netloc.rpartition("@")
    return f"{userinfo}{at}{hostport.lower()}"


def _extract_redirect_target(url: str, pairs: list[tuple[str, str]]) -> str | None:
    for candidate in REDIRECT_QUERY_PARAMS:
        for key, value in pairs:
            if key.lower() != candidate:
                continue
            decoded = _decode_safe(value)
            if is_http_url(decoded):
                return decoded
            # Only the first occurrence of each candidate parameter counts.
            break

    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if parts.path.startswith("/url") and host.endswith(SEARCH_ENGINE_REDIRECT_HOSTS):
        for key, value in pairs:
            if key.lower() in {"q", "url"}:
                decoded = _decode_safe(value)
                if is_http_url(decoded):
                    return decoded
    return None


def _decode_safe(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value
