from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from html import escape, unescape

from citelink.services.url_canonicalizer import is_http_url, normalize_url

PRE_CLASS = "overflow-auto rounded bg-gray-100 p-3 text-sm"
INLINE_CODE_CLASS = "px-1 py-0.5 bg-gray-100 rounded"
UNORDERED_LIST_CLASS = "list-disc pl-6 space-y-1"
ORDERED_LIST_CLASS = "list-decimal pl-6 space-y-1"
PARAGRAPH_CLASS = "mt-3"
LINK_CLASS = "underline"
MIN_HEADING_SIZE_STEP = 1
MAX_HEADING_SIZE_STEP = 6

_FENCE_RE = re.compile(r"^```")
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
_UNORDERED_ITEM_RE = re.compile(r"^[-*]\s+(.*)$")
_ORDERED_ITEM_RE = re.compile(r"^(\d+)\.\s+(.*)$")

_CODE_SPAN_RE = re.compile(r"`([^`]+?)`")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"(^|[^*])\*(?!\s)([^*]+?)\*(?!\*)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_BARE_URL_RE = re.compile(r"(^|\s)(https?://[^\s<\x00]+)", re.IGNORECASE)
_PLACEHOLDER_RE = re.compile(r"\x00(\d+)\x00")
_AUTOLINK_TRAILING_PUNCTUATION = ".,;:!?)"


class BlockContext(Enum):
    NONE = "none"
    UNORDERED_LIST = "ul"
    ORDERED_LIST = "ol"
    CODE_BLOCK = "code"


@dataclass
class RenderState:
    context: BlockContext = BlockContext.NONE
    code_lines: list[str] = field(default_factory=list)
    parts: list[str] = field(default_factory=list)

    def close_lists(self) -> None:
        if self.context is BlockContext.UNORDERED_LIST:
            self.parts.append("</ul>")
        elif self.context is BlockContext.ORDERED_LIST:
            self.parts.append("</ol>")
        else:
            return
        self.context = BlockContext.NONE

    def open_code_block(self) -> None:
        self.close_lists()
        self.context = BlockContext.CODE_BLOCK
        self.code_lines = []

    def close_code_block(self) -> None:
        body = escape_html("\n".join(self.code_lines))
        self.parts.append(f'<pre class="{PRE_CLASS}"><code>{body}</code></pre>')
        self.code_lines = []
        self.context = BlockContext.NONE

    def add_list_item(self, context: BlockContext, item_html: str) -> None:
        if self.context is not context:
            self.close_lists()
            list_tag = "ul" if context is BlockContext.UNORDERED_LIST else "ol"
            list_class = (
                UNORDERED_LIST_CLASS
                if context is BlockContext.UNORDERED_LIST
                else ORDERED_LIST_CLASS
            )
            self.parts.append(f'<{list_tag} class="{list_class}">')
            self.context = context
        self.parts.append(f"<li>{item_html}</li>")

    def finish(self) -> str:
        if self.context is BlockContext.CODE_BLOCK:
            self.close_code_block()
        self.close_lists()
        return "\n".join(self.parts)


def escape_html(text: str) -> str:
    return escape(text, quote=True)


def render_markdown(markdown_text: str) -> str:
    """Render the supported Markdown subset to sanitized HTML.

    Supported blocks: fenced code, ATX headings, ``-``/``*`` and numbered
    lists, paragraphs. Inline: bold, italic, code spans, ``[text](url)`` links
    and bare http(s) URLs. All input text is entity-escaped before any tag is
    generated around it, and every link URL goes through ``normalize_url``.
    Unterminated code blocks and lists are closed at end of input.
    """

    if not markdown_text:
        return ""

    lines = markdown_text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")
    state = RenderState()
    for raw_line in lines.split("\n"):
        if _FENCE_RE.match(raw_line):
            if state.context is BlockContext.CODE_BLOCK:
                state.close_code_block()
            else:
                state.open_code_block()
            continue

        if state.context is BlockContext.CODE_BLOCK:
            state.code_lines.append(raw_line)
            continue

        line = raw_line.rstrip()
        if not line.strip():
            state.close_lists()
            continue

        heading_match = _HEADING_RE.match(line)
        if heading_match is not None:
            state.close_lists()
            level = len(heading_match.group(1))
            content = render_inline(escape_html(heading_match.group(2)))
            state.parts.append(
                f'<h{level} class="mt-4 font-semibold {_heading_size_class(level)}">'
                f"{content}</h{level}>"
            )
            continue

        unordered_match = _UNORDERED_ITEM_RE.match(line)
        if unordered_match is not None:
            state.add_list_item(
                BlockContext.UNORDERED_LIST,
                render_inline(escape_html(unordered_match.group(1))),
            )
            continue

        ordered_match = _ORDERED_ITEM_RE.match(line)
        if ordered_match is not None:
            state.add_list_item(
                BlockContext.ORDERED_LIST,
                render_inline(escape_html(ordered_match.group(2))),
            )
            continue

        state.close_lists()
        state.parts.append(
            f'<p class="{PARAGRAPH_CLASS}">{render_inline(escape_html(line))}</p>'
        )

    return state.finish()


def _heading_size_class(level: int) -> str:
    step = max(MAX_HEADING_SIZE_STEP + 1 - level, MIN_HEADING_SIZE_STEP)
    if step == 1:
        return "text-xl"
    return f"text-{step}xl"


def render_inline(escaped: str) -> str:
    """Apply inline Markdown to already-escaped text.

    Code spans and generated anchors are parked behind NUL-delimited
    placeholders so later passes never rewrite their contents.
    """

    fragments: list[str] = []

    def _stash(fragment: str) -> str:
        fragments.append(fragment)
        return f"\x00{len(fragments) - 1}\x00"

    def _code_span(match: re.Match[str]) -> str:
        return _stash(f'<code class="{INLINE_CODE_CLASS}">{match.group(1)}</code>')

    def _link(match: re.Match[str]) -> str:
        link_text = match.group(1)
        normalized = normalize_url(unescape(match.group(2)).strip())
        if not is_http_url(normalized):
            return link_text
        return _stash(_anchor(escape_html(normalized), link_text))

    def _bare_url(match: re.Match[str]) -> str:
        prefix = match.group(1)
        raw_url = unescape(match.group(2))
        trimmed = raw_url.rstrip(_AUTOLINK_TRAILING_PUNCTUATION)
        trailing = raw_url[len(trimmed):]
        normalized = normalize_url(trimmed)
        if not is_http_url(normalized):
            return match.group(0)
        href = escape_html(normalized)
        return f"{prefix}{_stash(_anchor(href, href))}{escape_html(trailing)}"

    text = _CODE_SPAN_RE.sub(_code_span, escaped)
    text = _BOLD_RE.sub(r"<strong>\1</strong>", text)
    text = _ITALIC_RE.sub(r"\1<em>\2</em>", text)
    text = _LINK_RE.sub(_link, text)
    text = _BARE_URL_RE.sub(_bare_url, text)

    def _restore(match: re.Match[str]) -> str:
        return _PLACEHOLDER_RE.sub(_restore, fragments[int(match.group(1))])

    return _PLACEHOLDER_RE.sub(_restore, text)


def _anchor(href: str, label: str) -> str:
    return (
        f'<a href="{href}" target="_blank" rel="noopener noreferrer" '
        f'class="{LINK_CLASS}">{label}</a>'
    )
