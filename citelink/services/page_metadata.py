from __future__ import annotations

import re
from dataclasses import dataclass
from html.parser import HTMLParser

_REFRESH_URL_RE = re.compile(r"url\s*=\s*['\"]?([^'\";>]+)", re.IGNORECASE)
_NOT_FOUND_RE = re.compile(r"404|not\s+found|page\s+not\s+found", re.IGNORECASE)


@dataclass(frozen=True)
class PageLinks:
    canonical_href: str | None
    og_url: str | None
    refresh_url: str | None
    anchor_hrefs: tuple[str, ...]

    @property
    def preferred_canonical(self) -> str | None:
        return self.canonical_href or self.og_url


class _PageLinkParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.canonical_href: str | None = None
        self.og_url: str | None = None
        self.refresh_url: str | None = None
        self.anchor_hrefs: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        tag_name = tag.lower()
        attrs_map = {name.lower(): (value or "").strip() for name, value in attrs}
        if tag_name == "a":
            href = attrs_map.get("href")
            if href:
                self.anchor_hrefs.append(href)
            return
        if tag_name == "link":
            rel = attrs_map.get("rel", "").lower().split()
            href = attrs_map.get("href")
            if "canonical" in rel and href and self.canonical_href is None:
                self.canonical_href = href
            return
        if tag_name != "meta":
            return
        content = attrs_map.get("content")
        if not content:
            return
        if attrs_map.get("property", "").lower() == "og:url" and self.og_url is None:
            self.og_url = content
            return
        if attrs_map.get("http-equiv", "").lower() == "refresh" and self.refresh_url is None:
            match = _REFRESH_URL_RE.search(content)
            if match is not None:
                self.refresh_url = match.group(1).strip()


def extract_page_links(html_text: str | None) -> PageLinks:
    """Collect the redirect and canonical hints a page declares.

    Returns the first ``<link rel="canonical">``, the first ``og:url`` meta, the
    first meta-refresh target and every anchor ``href`` in document order.
    """

    parser = _PageLinkParser()
    if html_text:
        parser.feed(html_text)
        parser.close()
    return PageLinks(
        canonical_href=parser.canonical_href,
        og_url=parser.og_url,
        refresh_url=parser.refresh_url,
        anchor_hrefs=tuple(parser.anchor_hrefs),
    )


def looks_like_not_found(html_text: str | None) -> bool:
    if not html_text:
        return False
    return _NOT_FOUND_RE.search(html_text) is not None
