"""WordPress MCP server with block-level document editing.

Lets an agent pull a WordPress post or page into an in-memory editing
session, work on it one block at a time, and sync it back:

- wp_pull_for_editing: open a session (returns an opaque handle)
- wp_list_blocks / wp_read_block: inspect blocks
- wp_edit_block / wp_insert_block / wp_delete_block / wp_reorder_block: mutate
- wp_validate_blocks / wp_get_changes: check before syncing
- wp_sync: auto-fix, serialize and push the document back

Blocks live inside the post content as comment-delimited regions:

    <!-- wp:core/heading {"level":2} -->
    <h2>Title</h2>
    <!-- /wp:core/heading -->

Credentials: --url, --username and --password-file on the command line
(or WORDPRESS_URL / WORDPRESS_USERNAME / WORDPRESS_APP_PASSWORD).
"""

import asyncio
import copy
import hashlib
import json
import logging
import os
import random
import re
import secrets
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import parsy as P
from mcp.server.fastmcp import Context, FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("wordpress-mcp")


# =============================================================================
# Errors
# =============================================================================


class BlockEngineError(Exception):
    """Base class for errors raised by the block document engine."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class BlockParseError(BlockEngineError):
    """Block-comment markup could not be parsed. Aborts the whole parse."""

    code = "PARSE_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        line: int | None = None,
        excerpt: str | None = None,
    ):
        super().__init__(message, code)
        self.line = line
        self.excerpt = excerpt

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.line is not None:
            result["line"] = self.line
        if self.excerpt:
            result["excerpt"] = self.excerpt
        return result


class SessionNotFoundError(BlockEngineError):
    code = "UNKNOWN_HANDLE"

    def __init__(self, handle: str):
        super().__init__(f"No editing session for handle: {handle}")
        self.handle = handle


class BlockNotFoundError(BlockEngineError):
    code = "UNKNOWN_BLOCK"

    def __init__(self, block_id: str):
        super().__init__(f"Block {block_id} not found")
        self.block_id = block_id


class ValidationGateError(BlockEngineError):
    """Raised when a caller-requested pre-sync validation gate fails."""

    code = "VALIDATION_FAILED"

    def __init__(self, report: "ValidationReport"):
        super().__init__(
            f"Document has {len(report.errors)} validation error(s); sync blocked"
        )
        self.report = report


class SessionLimitError(BlockEngineError):
    code = "SESSION_LIMIT"


class NothingToRevertError(BlockEngineError):
    code = "NOTHING_TO_REVERT"


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., UNKNOWN_HANDLE, UNKNOWN_BLOCK)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


# Common error hints, keyed by error code
HINTS = {
    "UNKNOWN_HANDLE": "Sessions are closed explicitly or after a period of inactivity. Use wp_list_sessions, or wp_pull_for_editing to open a new one.",
    "UNKNOWN_BLOCK": "Block IDs are session-scoped. Use wp_list_blocks to see the current IDs.",
    "PARSE_ERROR": "The stored content has a malformed block comment. Fix it in the WordPress code editor and pull again.",
    "INVALID_ATTRIBUTES": "A block comment carries invalid JSON attributes. Fix it in the WordPress code editor and pull again.",
    "UNTERMINATED_BLOCK": "A block comment is never closed. Fix it in the WordPress code editor and pull again.",
    "VALIDATION_FAILED": "Run wp_validate_blocks and fix the listed blocks, or sync with require_valid=false to let auto-fix repair them.",
    "SESSION_LIMIT": "Close finished sessions with wp_close_session.",
    "NOTHING_TO_REVERT": "Only the most recent edit of a block can be reverted.",
    "NO_CLIENT": "Start the server with --url, --username and --password-file to reach WordPress.",
    "UNAUTHORIZED": "Check the WordPress username and application password.",
    "NOT_FOUND": "Check the content ID and content_type (post or page).",
    "RATE_LIMITED": "Too many requests. Wait a moment and try again.",
}


def _engine_error(e: BlockEngineError, ref: str | None = None) -> str:
    """Render an engine exception as a tool error string."""
    return _error(e.code, e.message, hint=HINTS.get(e.code), ref=ref)


# =============================================================================
# HTML Helpers
# =============================================================================

# Same entity set as the WordPress editor's escaping (apostrophe as &#39;)
_HTML_ESCAPES = {
    ord('&'): '&amp;',
    ord('<'): '&lt;',
    ord('>'): '&gt;',
    ord('"'): '&quot;',
    ord("'"): '&#39;',
}

TAG_PATTERN = re.compile(r'<[^>]+>')
HTML_PRESENCE_PATTERN = re.compile(r'<[a-z][\s\S]*>', re.IGNORECASE)


def escape_html(text: str) -> str:
    """Escape HTML special characters."""
    if not text:
        return ''
    return text.translate(_HTML_ESCAPES)


def strip_tags(html: str) -> str:
    """Remove all tags, keeping the text between them."""
    return TAG_PATTERN.sub('', html or '')


def is_html(text: str) -> bool:
    """True when the text contains at least one opening tag."""
    return bool(text) and bool(HTML_PRESENCE_PATTERN.search(text))


# =============================================================================
# Block Model
# =============================================================================

PREVIEW_LENGTH = 80


def compute_block_hash(block_type: str, attributes: dict | None, content: str | None) -> str:
    """Digest over the canonical JSON form of {type, attributes, content}.

    Keys are sorted so attribute order never matters. Values JSON cannot
    represent are stringified, so hashing never fails.
    """
    canonical = json.dumps(
        {
            "type": block_type or "",
            "attributes": attributes or {},
            "content": content or "",
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def _preview(content: str) -> str:
    text = strip_tags(content or '').strip()
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + '...'
    return text


@dataclass
class Block:
    """One block of a document: a typed, attributed region of content."""
    id: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    content: str = ""
    position: int = 0
    content_hash: str = ""
    original_hash: str = ""

    def compute_hash(self) -> str:
        return compute_block_hash(self.type, self.attributes, self.content)

    def refresh_hash(self) -> str:
        """Recompute content_hash from the current type/attributes/content."""
        self.content_hash = self.compute_hash()
        return self.content_hash

    def stamp_original(self) -> None:
        """Record the current state as the block's starting point."""
        self.original_hash = self.refresh_hash()

    @property
    def has_changes(self) -> bool:
        return self.compute_hash() != self.original_hash

    def clone(self) -> "Block":
        """Deep structural copy; the clone shares no mutable state."""
        return copy.deepcopy(self)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "preview": _preview(self.content),
            "position": self.position,
            "attributes": copy.deepcopy(self.attributes),
            "has_changes": self.has_changes,
        }


@dataclass(frozen=True)
class BlockSnapshot:
    """Immutable record of a block as it was when a session opened."""
    id: str
    type: str
    attributes_json: str
    content: str
    position: int
    hash: str

    @classmethod
    def of(cls, block: Block) -> "BlockSnapshot":
        return cls(
            id=block.id,
            type=block.type,
            attributes_json=json.dumps(block.attributes, sort_keys=True, default=str),
            content=block.content,
            position=block.position,
            hash=block.compute_hash(),
        )

    @property
    def attributes(self) -> dict:
        """A fresh copy of the attributes on every access."""
        return json.loads(self.attributes_json)


class BlockIdFactory:
    """Generates session-unique block IDs: block-<counter>-<8 hex chars>."""

    def __init__(self):
        self._counter = 0

    def __call__(self) -> str:
        self._counter += 1
        return f"block-{self._counter}-{secrets.token_hex(4)}"


def renumber(blocks: list[Block]) -> None:
    """Rewrite positions as the unbroken sequence 0..N-1 in list order."""
    for index, block in enumerate(blocks):
        block.position = index


def build_index(blocks: list[Block]) -> dict[str, Block]:
    """Map block ID to the (live) block object."""
    return {block.id: block for block in blocks}


# =============================================================================
# Block Parser / Serializer
# =============================================================================

# Tag that prefixes block names inside the comment delimiters
BLOCK_TAG = "wp:"

# Un-namespaced names written with the tag belong to this namespace
DEFAULT_NAMESPACE = "core"

# A comment that looks like it is meant to be a block marker
BLOCK_MARKER_HINT = re.compile(r'<!--\s*/?(?:wp:|[a-z][a-z0-9_-]*/[a-z])')
COMMENT_START = re.compile(r'<!--')

# Block comment grammar
_ws = P.regex(r'\s*')
_ws1 = P.regex(r'\s+')
# A hyphen may not start the closing "-->"
_NAME_SEGMENT = r"[a-z](?:[a-z0-9_]|-(?!->))*"
_block_name = P.regex(rf"{_NAME_SEGMENT}(?:/{_NAME_SEGMENT})?")
# Block types that serialize to a marker the grammar reads back unchanged
BLOCK_TYPE_PATTERN = re.compile(rf"{_NAME_SEGMENT}/{_NAME_SEGMENT}")
_attrs_json = P.regex(r'\{.*\}', re.DOTALL)


@P.generate
def _opening_marker():
    """<!-- [wp:]name [{json}] [/]-->  ->  (tagged, name, raw_attrs, is_void)"""
    yield P.string('<!--') >> _ws
    tag = yield P.string(BLOCK_TAG).optional()
    name = yield _block_name
    raw_attrs = yield (_ws1 >> _attrs_json).optional()
    void = yield (_ws >> P.string('/')).optional()
    yield _ws >> P.string('-->')
    return tag is not None, name, raw_attrs, void is not None


@P.generate
def _closing_marker():
    """<!-- /[wp:]name -->  ->  (tagged, name)"""
    yield P.string('<!--') >> _ws >> P.string('/')
    tag = yield P.string(BLOCK_TAG).optional()
    name = yield _block_name
    yield _ws >> P.string('-->')
    return tag is not None, name


def _block_type_for(tagged: bool, name: str) -> Optional[str]:
    """Resolve a marker name to a namespaced block type.

    With the tag, a bare name is in the default namespace (wp:paragraph is
    core/paragraph). Without it only namespaced names count as blocks.
    """
    if '/' in name:
        return name
    if tagged:
        return f"{DEFAULT_NAMESPACE}/{name}"
    return None


def _line_of(text: str, offset: int) -> tuple[int, str]:
    """1-based line number and text of the line containing offset."""
    line_num = text.count('\n', 0, offset) + 1
    start = text.rfind('\n', 0, offset) + 1
    end = text.find('\n', offset)
    if end == -1:
        end = len(text)
    return line_num, text[start:end]


def _parse_error(text: str, offset: int, code: str, message: str) -> BlockParseError:
    line_num, line = _line_of(text, offset)
    return BlockParseError(
        message,
        code=code,
        line=line_num,
        excerpt=f"{line_num}|{line.strip()}",
    )


def _comment_at(text: str, start: int) -> Optional[str]:
    """The full <!-- ... --> comment starting at start, or None if unterminated."""
    end = text.find('-->', start)
    if end == -1:
        return None
    return text[start:end + 3]


def _decode_attributes(raw: Optional[str], text: str, offset: int) -> dict:
    if raw is None:
        return {}
    try:
        attributes = json.loads(raw)
    except json.JSONDecodeError as e:
        raise _parse_error(
            text, offset, "INVALID_ATTRIBUTES",
            f"Malformed block attributes: {e.msg}"
        ) from e
    if not isinstance(attributes, dict):
        raise _parse_error(
            text, offset, "INVALID_ATTRIBUTES",
            "Block attributes must be a JSON object"
        )
    return attributes


def _find_closer(text: str, start: int, block_type: str) -> Optional[tuple[int, int]]:
    """Locate the first closing marker of block_type at or after start.

    Returns (closer_start, closer_end) or None. Closers of other types are
    part of the content and skipped.
    """
    for match in COMMENT_START.finditer(text, start):
        comment = _comment_at(text, match.start())
        if comment is None:
            return None
        try:
            tagged, name = _closing_marker.parse(comment)
        except P.ParseError:
            continue
        if _block_type_for(tagged, name) == block_type:
            return match.start(), match.start() + len(comment)
    return None


def parse_blocks(text: str, id_factory: Optional[Callable[[], str]] = None) -> list[Block]:
    """Parse block-comment markup into an ordered list of blocks.

    Content of a block runs up to the first closing marker of the same type,
    so a block nested inside another block of the same type is not supported.
    Anything outside block markers (including ordinary comments) is dropped.

    Raises:
        BlockParseError: on malformed attributes JSON, a marker that cannot
            be parsed, or a block that is never closed. One bad block fails
            the whole parse.
    """
    new_id = id_factory or BlockIdFactory()
    blocks: list[Block] = []
    pos = 0

    while True:
        match = COMMENT_START.search(text, pos)
        if not match:
            break
        start = match.start()
        comment = _comment_at(text, start)
        if comment is None:
            if BLOCK_MARKER_HINT.match(text, start):
                raise _parse_error(
                    text, start, "UNTERMINATED_BLOCK", "Block comment is never closed with -->"
                )
            break

        try:
            tagged, name, raw_attrs, is_void = _opening_marker.parse(comment)
        except P.ParseError:
            if BLOCK_MARKER_HINT.match(comment) and not re.match(r'<!--\s*/', comment):
                raise _parse_error(text, start, "PARSE_ERROR", "Invalid block comment")
            # Ordinary comment or stray closer
            pos = start + len(comment)
            continue

        block_type = _block_type_for(tagged, name)
        if block_type is None:
            pos = start + len(comment)
            continue

        attributes = _decode_attributes(raw_attrs, text, start)
        body_start = start + len(comment)

        if is_void:
            content = ''
            pos = body_start
        else:
            closer = _find_closer(text, body_start, block_type)
            if closer is None:
                raise _parse_error(
                    text, start, "UNTERMINATED_BLOCK",
                    f"No closing marker for {block_type}"
                )
            content = text[body_start:closer[0]].strip()
            pos = closer[1]

        block = Block(
            id=new_id(),
            type=block_type,
            attributes=attributes,
            content=content,
            position=len(blocks),
        )
        block.stamp_original()
        blocks.append(block)

    return blocks


def is_block_document(text: str) -> bool:
    """True when the text contains at least one block comment marker."""
    return bool(text) and bool(BLOCK_MARKER_HINT.search(text))


JSON_ESCAPE_PAIR = re.compile(r"\\(.)", re.DOTALL)


def serialize_attributes(attributes: dict) -> str:
    """Compact JSON with the same escaping the WordPress serializer applies.

    Raises ValueError/TypeError for values JSON cannot represent (including
    NaN and infinities).
    """
    encoded = json.dumps(
        attributes, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )
    # Walk escape pairs so an escaped backslash is never read as escaping a quote
    encoded = JSON_ESCAPE_PAIR.sub(
        lambda m: "\\u0022" if m.group(1) == "\"" else m.group(0), encoded
    )
    return (
        encoded
        .replace('--', '\\u002d\\u002d')
        .replace('<', '\\u003c')
        .replace('>', '\\u003e')
        .replace('&', '\\u0026')
    )


def serialize_block(block: Block) -> str:
    attrs = f" {serialize_attributes(block.attributes)}" if block.attributes else ""
    return (
        f"<!-- {BLOCK_TAG}{block.type}{attrs} -->\n"
        f"{block.content}\n"
        f"<!-- /{BLOCK_TAG}{block.type} -->"
    )


def serialize_blocks(blocks: list[Block]) -> str:
    """Render blocks back to block-comment markup, separated by blank lines."""
    return "\n\n".join(serialize_block(block) for block in blocks)


# =============================================================================
# Markup Converter
# =============================================================================

# Inline rules, applied in this order after HTML escaping
INLINE_RULES = [
    (re.compile(r'\*\*([^*]+)\*\*'), r'<strong>\1</strong>'),
    (re.compile(r'\*([^*]+)\*'), r'<em>\1</em>'),
    (re.compile(r'`([^`]+)`'), r'<code>\1</code>'),
    (re.compile(r'\[([^\]]+)\]\(([^)]+)\)'), r'<a href="\2">\1</a>'),
    (re.compile(r'~~([^~]+)~~'), r'<s>\1</s>'),
]

HEADING_LINE = re.compile(r'^(#{1,6})\s+(.+)$')
UNORDERED_ITEM_LINE = re.compile(r'^(\s*)[-*+]\s+(.+)$')
ORDERED_ITEM_LINE = re.compile(r'^(\s*)\d+\.\s+(.+)$')
IMAGE_LINE = re.compile(r'^!\[([^\]]*)\]\(([^)]+)\)$')
TABLE_SEPARATOR_ROW = re.compile(r'^\s*\|?\s*[-:]+\s*\|')
HORIZONTAL_RULES = {'---', '***', '___'}


@dataclass
class _ListItem:
    text: str
    indent: int
    ordered: bool = False


def format_inline(text: str) -> str:
    """Escape text, then turn **bold**, *italic*, `code`, [links](url), ~~strike~~ into tags."""
    formatted = escape_html(text)
    for pattern, replacement in INLINE_RULES:
        formatted = pattern.sub(replacement, formatted)
    return formatted


def _is_table_row(line: str) -> bool:
    return '|' in line and not line.startswith('```')


def _table_cells(row: str) -> list[str]:
    return [cell.strip() for cell in row.split('|') if cell.strip()]


def _heading_block(text: str, level: int) -> tuple[str, str, dict]:
    return 'core/heading', f"<h{level}>{escape_html(text)}</h{level}>", {"level": level}


def _paragraph_block(text: str) -> tuple[str, str, dict]:
    return 'core/paragraph', f"<p>{format_inline(text)}</p>", {}


def _list_block(items: list[_ListItem]) -> tuple[str, str, dict]:
    ordered = any(item.ordered for item in items)
    tag = 'ol' if ordered else 'ul'
    body = '\n'.join(f"<li>{format_inline(item.text)}</li>" for item in items)
    return 'core/list', f"<{tag}>\n{body}\n</{tag}>", {"ordered": ordered}


def _quote_block(text: str) -> tuple[str, str, dict]:
    return (
        'core/quote',
        f'<blockquote class="wp-block-quote"><p>{format_inline(text)}</p></blockquote>',
        {},
    )


def _code_block(lines: list[str]) -> tuple[str, str, dict]:
    code = escape_html('\n'.join(lines))
    return 'core/code', f'<pre class="wp-block-code"><code>{code}</code></pre>', {}


def _image_block(url: str, alt: str) -> tuple[str, str, dict]:
    content = (
        f'<figure class="wp-block-image">'
        f'<img src="{escape_html(url)}" alt="{escape_html(alt)}"/></figure>'
    )
    return 'core/image', content, {"url": url, "alt": alt}


def _separator_block() -> tuple[str, str, dict]:
    return 'core/separator', '<hr class="wp-block-separator"/>', {}


def _table_block(rows: list[str]) -> tuple[str, str, dict]:
    header_row = None
    body_rows = rows
    if len(rows) > 1 and TABLE_SEPARATOR_ROW.match(rows[1]):
        header_row = rows[0]
        body_rows = rows[2:]

    parts = ['<figure class="wp-block-table"><table>']
    if header_row:
        parts.append('<thead><tr>')
        parts.extend(f"<th>{escape_html(cell)}</th>" for cell in _table_cells(header_row))
        parts.append('</tr></thead>')
    if body_rows:
        parts.append('<tbody>')
        for row in body_rows:
            if TABLE_SEPARATOR_ROW.match(row):
                continue
            parts.append('<tr>')
            parts.extend(f"<td>{format_inline(cell)}</td>" for cell in _table_cells(row))
            parts.append('</tr>')
        parts.append('</tbody>')
    parts.append('</table></figure>')
    return 'core/table', ''.join(parts), {}


def _convert_markup(markup: str) -> list[tuple[str, str, dict]]:
    """Scan markup line by line into (type, content, attributes) triples."""
    blocks: list[tuple[str, str, dict]] = []
    list_items: list[_ListItem] = []
    table_rows: list[str] = []
    code_lines: list[str] = []
    in_code = False

    def flush_list():
        if list_items:
            blocks.append(_list_block(list_items[:]))
            list_items.clear()

    def flush_table():
        if table_rows:
            blocks.append(_table_block(table_rows[:]))
            table_rows.clear()

    for line in markup.split('\n'):
        trimmed = line.strip()

        # Fenced code start/end
        if trimmed.startswith('```'):
            if in_code:
                blocks.append(_code_block(code_lines))
                code_lines = []
                in_code = False
            else:
                flush_list()
                flush_table()
                in_code = True
            continue

        if in_code:
            code_lines.append(line)
            continue

        if _is_table_row(trimmed):
            flush_list()
            table_rows.append(trimmed)
            continue
        flush_table()

        if not trimmed:
            flush_list()
            continue

        heading = HEADING_LINE.match(line)
        if heading:
            flush_list()
            blocks.append(_heading_block(heading.group(2), len(heading.group(1))))
            continue

        item = UNORDERED_ITEM_LINE.match(line)
        if item:
            list_items.append(_ListItem(item.group(2), len(item.group(1))))
            continue

        item = ORDERED_ITEM_LINE.match(line)
        if item:
            list_items.append(_ListItem(item.group(2), len(item.group(1)), ordered=True))
            continue

        if trimmed.startswith('>'):
            flush_list()
            blocks.append(_quote_block(re.sub(r'^>\s*', '', trimmed)))
            continue

        if trimmed in HORIZONTAL_RULES:
            flush_list()
            blocks.append(_separator_block())
            continue

        image = IMAGE_LINE.match(trimmed)
        if image:
            flush_list()
            blocks.append(_image_block(image.group(2), image.group(1)))
            continue

        flush_list()
        blocks.append(_paragraph_block(trimmed))

    flush_list()
    if in_code and code_lines:
        blocks.append(_code_block(code_lines))
    flush_table()
    return blocks


def markup_to_blocks(markup: str) -> str:
    """Convert the markdown-like dialect to block-comment markup.

    Each heading, list run, quote line, rule, image, table, fenced code region
    and remaining line becomes one block.
    """
    blocks = [
        Block(id="", type=block_type, attributes=attributes, content=content)
        for block_type, content, attributes in _convert_markup(markup or '')
    ]
    return serialize_blocks(blocks)


def markup_to_block_list(markup: str, id_factory: Optional[Callable[[], str]] = None) -> list[Block]:
    """Convert markup straight to parsed blocks (IDs, positions and hashes set)."""
    return parse_blocks(markup_to_blocks(markup), id_factory)


# Reverse direction only knows a handful of tags; the rest passes through
BLOCK_COMMENT_PATTERN = re.compile(
    r'<!--\s*/?(?:wp:|[a-z][a-z0-9_-]*/[a-z])[\s\S]*?-->'
)
REVERSE_RULES = [
    (re.compile(r'<h([1-6])>(.*?)</h[1-6]>'),
     lambda m: '#' * int(m.group(1)) + ' ' + m.group(2)),
    (re.compile(r'<p>(.*?)</p>'), r'\1\n'),
    (re.compile(r'<strong>(.*?)</strong>'), r'**\1**'),
    (re.compile(r'<em>(.*?)</em>'), r'*\1*'),
    (re.compile(r'<code>(.*?)</code>'), r'`\1`'),
    (re.compile(r'<a href="([^"]+)">([^<]+)</a>'), r'[\2](\1)'),
    (re.compile(r'<hr[^>]*>'), '---'),
]


def blocks_to_markup(block_markup: str) -> str:
    """Approximate markup view of block-comment markup.

    Lossy: only headings, paragraphs, bold, italic, code, links and rules are
    mapped back. Converting markup to blocks and back is not guaranteed to
    reproduce the input.
    """
    text = BLOCK_COMMENT_PATTERN.sub('', block_markup or '')
    for pattern, replacement in REVERSE_RULES:
        text = pattern.sub(replacement, text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


CLASSIC_HTML_PATTERN = re.compile(
    r'<(?:p|h[1-6]|ul|ol|li|blockquote|div|figure|table|pre|img|br)[\s>/]',
    re.IGNORECASE,
)


def looks_like_classic_html(text: str) -> bool:
    """Tagged content without block markers (pre-block-editor posts)."""
    return bool(text) and not is_block_document(text) and bool(CLASSIC_HTML_PATTERN.search(text))


def _ordered_items(match: re.Match) -> str:
    items = re.findall(r'<li[^>]*>(.*?)</li>', match.group(1), re.DOTALL)
    return ''.join(f"{i}. {item.strip()}\n" for i, item in enumerate(items, start=1))


def _unordered_items(match: re.Match) -> str:
    items = re.findall(r'<li[^>]*>(.*?)</li>', match.group(1), re.DOTALL)
    return ''.join(f"- {item.strip()}\n" for item in items)


def html_to_markup(html: str) -> str:
    """Best-effort conversion of classic (non-block) HTML to markup."""
    text = html or ''
    text = re.sub(r'<h([1-6])[^>]*>(.*?)</h[1-6]>',
                  lambda m: '#' * int(m.group(1)) + ' ' + m.group(2) + '\n\n', text)
    text = re.sub(r'<p[^>]*>(.*?)</p>', r'\1\n\n', text, flags=re.DOTALL)
    text = re.sub(r'<(?:strong|b)>(.*?)</(?:strong|b)>', r'**\1**', text)
    text = re.sub(r'<(?:em|i)>(.*?)</(?:em|i)>', r'*\1*', text)
    text = re.sub(r'<code>(.*?)</code>', r'`\1`', text)
    text = re.sub(r'<a href="([^"]+)"[^>]*>([^<]+)</a>', r'[\2](\1)', text)
    text = re.sub(r'<hr[^>]*>', '\n---\n', text)
    text = re.sub(r'<br[^>]*>', '\n', text)
    text = re.sub(r'<ul[^>]*>(.*?)</ul>', _unordered_items, text, flags=re.DOTALL)
    text = re.sub(r'<ol[^>]*>(.*?)</ol>', _ordered_items, text, flags=re.DOTALL)
    text = re.sub(r'<blockquote[^>]*>(.*?)</blockquote>',
                  lambda m: '> ' + strip_tags(m.group(1)).strip() + '\n\n', text, flags=re.DOTALL)
    text = strip_tags(text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


# =============================================================================
# Block Validator
# =============================================================================

# Namespaces whose unregistered types are still accepted
ACCEPTED_NAMESPACES = ("core/",)

# Tags that never need a closing tag
VOID_TAGS = {
    'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input',
    'link', 'meta', 'source', 'track', 'wbr',
}

TAG_SCAN_PATTERN = re.compile(r'<(/?)([a-zA-Z][a-zA-Z0-9]*)[^>]*>')

# Inline format -> tag detector
INLINE_FORMAT_PATTERNS = [
    ('bold', re.compile(r'<(?:strong|b)[\s>]', re.IGNORECASE)),
    ('italic', re.compile(r'<(?:em|i)[\s>]', re.IGNORECASE)),
    ('link', re.compile(r'<a\s', re.IGNORECASE)),
    ('code', re.compile(r'<code[\s>]', re.IGNORECASE)),
    ('strikethrough', re.compile(r'<(?:s|del)[\s>]', re.IGNORECASE)),
    ('subscript', re.compile(r'<sub[\s>]', re.IGNORECASE)),
    ('superscript', re.compile(r'<sup[\s>]', re.IGNORECASE)),
]


@dataclass(frozen=True)
class AttributeSpec:
    """Schema entry for one block attribute."""
    type: str  # string, number, boolean, array, object
    required: bool = False
    enum: Optional[tuple] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass(frozen=True)
class BlockTypeSpec:
    """Everything the engine knows about one block type."""
    name: str
    attributes: dict[str, AttributeSpec] = field(default_factory=dict)
    # None means inline formats are not checked for this type
    formats: Optional[tuple[str, ...]] = None
    requires_content: bool = False
    fix: Optional[Callable[[Block, list[str]], None]] = None


class BlockTypeRegistry:
    """Strategy table: block type name -> BlockTypeSpec."""

    def __init__(self, namespaces: tuple[str, ...] = ACCEPTED_NAMESPACES):
        self._specs: dict[str, BlockTypeSpec] = {}
        self.namespaces = namespaces

    def register(self, spec: BlockTypeSpec) -> BlockTypeSpec:
        self._specs[spec.name] = spec
        return spec

    def get(self, block_type: str) -> Optional[BlockTypeSpec]:
        return self._specs.get(block_type)

    def names(self) -> list[str]:
        return list(self._specs)

    def accepts(self, block_type: str) -> bool:
        """Known type, or a type inside an accepted namespace."""
        return block_type in self._specs or block_type.startswith(self.namespaces)

    def suggest(self, block_type: str) -> Optional[str]:
        """Closest registered type by substring match, ignoring namespaces."""
        bare = block_type.split('/', 1)[-1]
        if not bare:
            return None
        for name in self._specs:
            short = name.split('/', 1)[-1]
            if bare in name or short in block_type:
                return name
        return None

    def __contains__(self, block_type: str) -> bool:
        return block_type in self._specs

    def __len__(self) -> int:
        return len(self._specs)


@dataclass
class ValidationReport:
    """Outcome of validating a list of blocks."""
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    per_block_errors: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "per_block_errors": {k: list(v) for k, v in self.per_block_errors.items()},
        }


def _type_name(value: Any) -> str:
    """Schema type name of a Python value."""
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, (list, tuple)):
        return 'array'
    if isinstance(value, dict):
        return 'object'
    if value is None:
        return 'null'
    return type(value).__name__


def _range_text(spec: AttributeSpec) -> str:
    low = '' if spec.minimum is None else f"{spec.minimum:g}"
    high = '' if spec.maximum is None else f"{spec.maximum:g}"
    return f"{low}-{high}"


def validate_attributes(attributes: dict, schema: dict[str, AttributeSpec]) -> list[str]:
    """Check attributes against a schema. Unknown attributes are allowed."""
    errors: list[str] = []

    for key, spec in schema.items():
        if spec.required and key not in attributes:
            errors.append(f"Missing required attribute: {key}")

    for key, value in attributes.items():
        spec = schema.get(key)
        if spec is None:
            continue

        actual = _type_name(value)
        if actual != spec.type:
            errors.append(f"Attribute {key} must be {spec.type}, got {actual}")

        if spec.enum is not None and value not in spec.enum:
            errors.append(f"Attribute {key} must be one of: {', '.join(spec.enum)}")

        if spec.type == 'number' and actual == 'number':
            if spec.minimum is not None and value < spec.minimum:
                errors.append(
                    f"Attribute {key} must be at least {spec.minimum:g} "
                    f"(valid range: {_range_text(spec)})"
                )
            if spec.maximum is not None and value > spec.maximum:
                errors.append(
                    f"Attribute {key} must be at most {spec.maximum:g} "
                    f"(valid range: {_range_text(spec)})"
                )

    return errors


def find_unbalanced_tag(html: str) -> Optional[str]:
    """Describe the first unmatched tag in html, or None when balanced."""
    stack: list[str] = []
    for match in TAG_SCAN_PATTERN.finditer(html):
        closing = match.group(1) == '/'
        name = match.group(2).lower()
        if match.group(0).endswith('/>') or name in VOID_TAGS:
            continue
        if closing:
            if not stack or stack[-1] != name:
                return f"unexpected </{name}>"
            stack.pop()
        else:
            stack.append(name)
    if stack:
        return f"unclosed <{stack[-1]}>"
    return None


def detect_inline_formats(content: str) -> list[str]:
    return [name for name, pattern in INLINE_FORMAT_PATTERNS if pattern.search(content)]


def validate_block(block: Block, registry: Optional[BlockTypeRegistry] = None) -> list[str]:
    """Validate one block, returning diagnostics in check order.

    Stages: structure, type membership, attribute schema, required content,
    tag balance, inline-format support. A missing type, or a type name that
    cannot be written as a block marker, stops the checks.
    """
    registry = registry or DEFAULT_BLOCK_TYPES
    errors: list[str] = []

    if not block.type:
        errors.append("Block must have a type")
        return errors
    if not block.id:
        errors.append("Block must have an id")
    if not isinstance(block.type, str) or not BLOCK_TYPE_PATTERN.fullmatch(block.type):
        errors.append(f"Invalid block type name: {block.type} (expected lowercase namespace/name)")
        return errors

    if not registry.accepts(block.type):
        errors.append(f"Unknown block type: {block.type}")
        suggestion = registry.suggest(block.type)
        if suggestion:
            errors.append(f"Did you mean: {suggestion}?")

    spec = registry.get(block.type)
    if spec is not None:
        errors.extend(validate_attributes(block.attributes or {}, spec.attributes))
        if spec.requires_content and not (block.content or '').strip():
            errors.append(f"{block.type} block requires content")

    if block.content:
        problem = find_unbalanced_tag(block.content)
        if problem:
            errors.append(f"Content contains unbalanced HTML tags: {problem}")

    if block.content and spec is not None and spec.formats is not None:
        unsupported = [f for f in detect_inline_formats(block.content) if f not in spec.formats]
        if unsupported:
            errors.append(
                f"Block type {block.type} doesn't support formats: {', '.join(unsupported)}"
            )

    return errors


def validate_block_context(blocks: list[Block]) -> list[str]:
    """Cross-block rules: a list directly after a list is a nested list."""
    errors = []
    in_list = False
    for index, block in enumerate(blocks):
        if block.type == 'core/list':
            if in_list:
                errors.append(f"Nested lists are not supported (block {index})")
            in_list = True
        else:
            in_list = False
    return errors


def validate_blocks(blocks: list[Block], registry: Optional[BlockTypeRegistry] = None) -> ValidationReport:
    """Validate every block and the relationships between them."""
    report = ValidationReport()

    for index, block in enumerate(blocks):
        errors = validate_block(block, registry)
        if errors:
            key = block.id or f"block-{index}"
            report.valid = False
            report.per_block_errors[key] = errors
            report.errors.append(f"Block {block.id or index}: {', '.join(errors)}")

    context_errors = validate_block_context(blocks)
    if context_errors:
        report.valid = False
        report.errors.extend(context_errors)

    return report


def suggestions_for_errors(errors: list[str], registry: Optional[BlockTypeRegistry] = None) -> list[str]:
    """One fix-it hint per distinct error family present in errors."""
    registry = registry or DEFAULT_BLOCK_TYPES
    suggestions: list[str] = []

    def add(text: str):
        if text not in suggestions:
            suggestions.append(text)

    for error in errors:
        if 'Invalid block type name' in error:
            add("Use a lowercase namespaced block type such as core/paragraph")
        elif 'Missing required attribute' in error:
            add("Add the missing required attributes to the block")
        elif 'Unknown block type' in error:
            add(f"Use one of the valid block types: {', '.join(valid_block_types(registry))}")
        elif 'must be one of' in error:
            add("Check the valid values in the error message")
        elif 'valid range' in error:
            add("Use a value inside the valid range")
        elif 'requires content' in error:
            add("Add content to the block")
        elif 'unbalanced HTML' in error:
            add("Ensure all HTML tags are properly closed")
        elif "doesn't support formats" in error:
            add("Remove the unsupported inline formatting")
        elif 'Nested lists' in error:
            add("Merge adjacent list blocks or separate them with a paragraph")
    return suggestions


def valid_block_types(registry: Optional[BlockTypeRegistry] = None) -> list[str]:
    return (registry or DEFAULT_BLOCK_TYPES).names()


def attribute_help(block_type: str, registry: Optional[BlockTypeRegistry] = None) -> dict[str, dict]:
    """Describe the attribute schema of a block type (empty if unregistered)."""
    registry = registry or DEFAULT_BLOCK_TYPES
    spec = registry.get(block_type)
    if spec is None:
        return {}
    described = {}
    for name, attr in spec.attributes.items():
        entry: dict[str, Any] = {"type": attr.type}
        if attr.required:
            entry["required"] = True
        if attr.enum:
            entry["enum"] = list(attr.enum)
        if attr.minimum is not None:
            entry["minimum"] = attr.minimum
        if attr.maximum is not None:
            entry["maximum"] = attr.maximum
        described[name] = entry
    return described


# =============================================================================
# Block Auto-Fixer
# =============================================================================

DEFAULT_HEADING_LEVEL = 2
EMPTY_BLOCK_PLACEHOLDER = "[empty block]"
LAST_RESORT_FIX = "Converted all blocks to paragraphs as last resort"

FALSY_STRINGS = {'', '0', 'false', 'no', 'off', 'none', 'null'}
LIST_MARKER = re.compile(r'^(?:[-*+]|\d+[.)])\s*')


@dataclass
class FixResult:
    """Fixed copies of the input blocks plus a log of what changed."""
    blocks: list[Block]
    fixes: list[str] = field(default_factory=list)

    @property
    def fix_count(self) -> int:
        return len(self.fixes)

    def summary(self) -> str:
        if not self.fixes:
            return "No fixes needed"
        counts: dict[str, int] = {}
        for fix in self.fixes:
            key = ' '.join(fix.split(' ')[:2])
            counts[key] = counts.get(key, 0) + 1
        lines = [f"Applied {len(self.fixes)} fixes:"]
        lines.extend(f"- {key}: {count}" for key, count in counts.items())
        return "\n".join(lines)


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value == value and abs(value) != float('inf'):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    return bool(value)


def _fix_heading(block: Block, fixes: list[str]) -> None:
    current = block.attributes.get('level')
    level = _coerce_int(current)
    level = DEFAULT_HEADING_LEVEL if level is None else min(max(level, 1), 6)
    if current != level or isinstance(current, bool):
        block.attributes['level'] = level
        fixes.append(f"Fixed invalid heading level ({block.id or block.type})")

    if block.content and not re.search(rf'<h{level}[\s>]', block.content):
        if is_html(block.content):
            text = strip_tags(block.content).strip()
        else:
            text = escape_html(block.content.strip())
        block.content = f"<h{level}>{text}</h{level}>"
        fixes.append(f"Generated heading HTML ({block.id or block.type})")


def _fix_list(block: Block, fixes: list[str]) -> None:
    ordered = block.attributes.get('ordered')
    if not isinstance(ordered, bool):
        ordered = _coerce_bool(ordered)
        block.attributes['ordered'] = ordered
        fixes.append(f"Fixed list ordered attribute ({block.id or block.type})")

    if block.content and '<li' not in block.content:
        tag = 'ol' if ordered else 'ul'
        items = [line.strip() for line in block.content.split('\n') if line.strip()]
        if items:
            body = ''.join(
                f"<li>{escape_html(LIST_MARKER.sub('', item))}</li>" for item in items
            )
            block.content = f"<{tag}>{body}</{tag}>"
            fixes.append(f"Generated list HTML from content ({block.id or block.type})")
        else:
            block.content = f"<{tag}><li>Empty list</li></{tag}>"
            fixes.append(f"Fixed empty list ({block.id or block.type})")


def _fix_image(block: Block, fixes: list[str]) -> None:
    if 'alt' not in block.attributes:
        block.attributes['alt'] = ''
        fixes.append(f"Added missing alt attribute ({block.id or block.type})")

    if not block.attributes.get('url'):
        description = block.attributes.get('alt') or 'No description'
        block.type = 'core/paragraph'
        block.content = f"<p>[Image placeholder: {escape_html(str(description))}]</p>"
        block.attributes.pop('url', None)
        block.attributes.pop('alt', None)
        fixes.append(
            f"Converted image without URL to paragraph placeholder ({block.id or block.type})"
        )


def _fix_paragraph(block: Block, fixes: list[str]) -> None:
    stripped = (block.content or '').strip()
    if re.match(r'<p[\s>]', stripped) and stripped.endswith('</p>'):
        return
    if is_html(block.content):
        block.content = f"<p>{block.content}</p>"
    else:
        block.content = f"<p>{escape_html(block.content)}</p>"
    fixes.append(f"Generated paragraph HTML ({block.id or block.type})")


def _fix_quote(block: Block, fixes: list[str]) -> None:
    if not (block.content or '').strip() or '<blockquote' in block.content:
        return
    inner = block.content if is_html(block.content) else f"<p>{escape_html(block.content)}</p>"
    block.content = f'<blockquote class="wp-block-quote">{inner}</blockquote>'
    fixes.append(f"Generated quote HTML ({block.id or block.type})")


def _fix_code(block: Block, fixes: list[str]) -> None:
    if not (block.content or '').strip() or '<pre' in block.content:
        return
    block.content = f'<pre class="wp-block-code"><code>{escape_html(block.content)}</code></pre>'
    fixes.append(f"Generated code HTML ({block.id or block.type})")


def _fix_separator(block: Block, fixes: list[str]) -> None:
    if (block.content or '').strip():
        return
    block.content = '<hr class="wp-block-separator"/>'
    fixes.append(f"Generated separator HTML ({block.id or block.type})")


def _fix_type_name(block: Block, fixes: list[str]) -> None:
    if isinstance(block.type, str) and BLOCK_TYPE_PATTERN.fullmatch(block.type):
        return
    fixes.append(
        f"Converted invalid block type {block.type!r} to core/paragraph ({block.id or 'new block'})"
    )
    block.type = 'core/paragraph'


def _fix_generic(block: Block, fixes: list[str]) -> None:
    if block.content and '<' not in block.content:
        block.content = f"<div>{escape_html(block.content)}</div>"
        fixes.append(f"Generated HTML wrapper for {block.type}")


def fix_blocks(
    blocks: list[Block],
    registry: Optional[BlockTypeRegistry] = None,
    id_factory: Optional[Callable[[], str]] = None,
) -> FixResult:
    """Repair blocks before they are persisted. Never raises.

    Works on clones; the input list is left untouched. A block whose fixer
    fails is passed through unchanged and the failure is recorded.
    """
    registry = registry or DEFAULT_BLOCK_TYPES
    new_id = id_factory or BlockIdFactory()
    fixes: list[str] = []
    fixed: list[Block] = []

    for block in blocks:
        try:
            candidate = block.clone()
        except Exception as e:
            logger.warning(f"Could not copy block {block.id}: {e}")
            fixes.append(f"Could not fix {block.id or block.type}: {type(e).__name__}")
            fixed.append(block)
            continue

        try:
            if not isinstance(candidate.attributes, dict):
                candidate.attributes = {}
                fixes.append(f"Reset invalid attributes ({candidate.id or candidate.type})")
            if not isinstance(candidate.content, str):
                candidate.content = '' if candidate.content is None else str(candidate.content)
            _fix_type_name(candidate, fixes)
            spec = registry.get(candidate.type)
            fixer = spec.fix if spec is not None and spec.fix is not None else _fix_generic
            fixer(candidate, fixes)
        except Exception as e:
            logger.warning(f"Auto-fix failed for block {block.id}: {e}")
            fixes.append(f"Could not fix {block.id or block.type}: {e}")
            candidate = block.clone()
            # Persisted types must read back as block markers
            _fix_type_name(candidate, [])

        if not candidate.id:
            candidate.id = new_id()
            fixes.append("Added missing block ID")

        candidate.refresh_hash()
        fixed.append(candidate)

    return FixResult(blocks=fixed, fixes=fixes)


def paragraph_fallback(blocks: list[Block], id_factory: Optional[Callable[[], str]] = None) -> list[Block]:
    """Turn every block into a plain paragraph holding its original content."""
    new_id = id_factory or BlockIdFactory()
    fallback = []
    for index, block in enumerate(blocks):
        content = block.content if isinstance(block.content, str) else str(block.content or '')
        paragraph = Block(
            id=block.id or new_id(),
            type='core/paragraph',
            attributes={},
            content=f"<p>{content or EMPTY_BLOCK_PLACEHOLDER}</p>",
            position=index,
            original_hash=block.original_hash,
        )
        paragraph.refresh_hash()
        fallback.append(paragraph)
    return fallback


# =============================================================================
# Block Type Registry
# =============================================================================

ALIGN_WIDE = ('left', 'center', 'right', 'wide', 'full')
ALIGN_TEXT = ('left', 'center', 'right')


def default_block_types() -> BlockTypeRegistry:
    """Registry of the core block types the engine validates and repairs."""
    registry = BlockTypeRegistry()
    registry.register(BlockTypeSpec(
        name='core/paragraph',
        attributes={
            'align': AttributeSpec('string', enum=ALIGN_WIDE),
            'content': AttributeSpec('string'),
            'dropCap': AttributeSpec('boolean'),
            'placeholder': AttributeSpec('string'),
            'fontSize': AttributeSpec('string'),
            'textColor': AttributeSpec('string'),
            'backgroundColor': AttributeSpec('string'),
        },
        formats=('bold', 'italic', 'link', 'code', 'strikethrough', 'subscript', 'superscript'),
        requires_content=True,
        fix=_fix_paragraph,
    ))
    registry.register(BlockTypeSpec(
        name='core/heading',
        attributes={
            'align': AttributeSpec('string', enum=ALIGN_TEXT),
            'content': AttributeSpec('string'),
            'level': AttributeSpec('number', required=True, minimum=1, maximum=6),
            'placeholder': AttributeSpec('string'),
            'textColor': AttributeSpec('string'),
            'backgroundColor': AttributeSpec('string'),
        },
        formats=('bold', 'italic', 'link'),
        requires_content=True,
        fix=_fix_heading,
    ))
    registry.register(BlockTypeSpec(
        name='core/list',
        attributes={
            'ordered': AttributeSpec('boolean'),
            'values': AttributeSpec('string'),
            'reversed': AttributeSpec('boolean'),
            'start': AttributeSpec('number'),
        },
        formats=('bold', 'italic', 'link', 'code'),
        requires_content=True,
        fix=_fix_list,
    ))
    registry.register(BlockTypeSpec(
        name='core/quote',
        attributes={
            'value': AttributeSpec('string'),
            'citation': AttributeSpec('string'),
            'align': AttributeSpec('string', enum=ALIGN_TEXT),
        },
        formats=('bold', 'italic', 'link'),
        requires_content=True,
        fix=_fix_quote,
    ))
    registry.register(BlockTypeSpec(
        name='core/code',
        attributes={'content': AttributeSpec('string')},
        # Only the <code> wrapper itself
        formats=('code',),
        fix=_fix_code,
    ))
    registry.register(BlockTypeSpec(
        name='core/image',
        attributes={
            'url': AttributeSpec('string', required=True),
            'alt': AttributeSpec('string'),
            'caption': AttributeSpec('string'),
            'align': AttributeSpec('string', enum=ALIGN_WIDE),
            'width': AttributeSpec('number'),
            'height': AttributeSpec('number'),
            'linkDestination': AttributeSpec('string'),
            'link': AttributeSpec('string'),
        },
        fix=_fix_image,
    ))
    registry.register(BlockTypeSpec(
        name='core/separator',
        attributes={'className': AttributeSpec('string')},
        fix=_fix_separator,
    ))
    registry.register(BlockTypeSpec(
        name='core/table',
        attributes={
            'hasFixedLayout': AttributeSpec('boolean'),
            'caption': AttributeSpec('string'),
            'head': AttributeSpec('array'),
            'body': AttributeSpec('array'),
            'foot': AttributeSpec('array'),
        },
    ))
    registry.register(BlockTypeSpec(
        name='core/button',
        formats=('bold', 'italic'),
    ))
    return registry


# Built once at import; shared read-only by validator and auto-fixer
DEFAULT_BLOCK_TYPES = default_block_types()


# =============================================================================
# Document Session
# =============================================================================

CONTENT_TYPES = ('post', 'page')


@dataclass
class HistoryEntry:
    """One mutation in a session's append-only history."""
    op: str  # edit, insert, delete, reorder, revert
    block_id: str
    backup: Optional[Block] = None  # pre-edit copy (edit) or removed block (delete)
    old_position: Optional[int] = None
    new_position: Optional[int] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class CachedValidation:
    valid: bool
    errors: list[str]
    timestamp: float


@dataclass
class MutationResult:
    """What a caller learns after edit/insert: the block and any warnings."""
    block: dict
    message: str
    warnings: list[str] = field(default_factory=list)


@dataclass
class ChangeSet:
    """Blocks added, modified and deleted relative to the session baseline."""
    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.modified) + len(self.added) + len(self.deleted)

    def to_dict(self) -> dict:
        return {
            "modified": list(self.modified),
            "added": list(self.added),
            "deleted": list(self.deleted),
            "total": self.total,
        }


@dataclass
class SyncPayload:
    """Serialized document plus the auto-fix log, ready for the platform update."""
    content_id: Any
    content_type: str
    content: str
    metadata: dict
    has_changes: bool
    fixes: list[str] = field(default_factory=list)

    @property
    def fix_count(self) -> int:
        return len(self.fixes)

    @property
    def summary(self) -> str:
        if self.fixes:
            return (
                f"Applied {self.fix_count} fixes to ensure valid blocks. "
                f"Review content after sync to ensure it matches your intent."
            )
        return "Content validated successfully"


class DocumentSession:
    """An editable, position-ordered block document with a fixed baseline.

    The baseline is captured once at creation and is the only reference point
    for change tracking. Mutations renumber positions so they always form
    0..N-1, and every mutation lands in an append-only history.
    """

    def __init__(
        self,
        handle: str,
        content_id: Any,
        content_type: str = 'post',
        metadata: Optional[dict] = None,
        registry: Optional[BlockTypeRegistry] = None,
    ):
        if content_type not in CONTENT_TYPES:
            raise ValueError(f"content_type must be one of {CONTENT_TYPES}, got {content_type!r}")
        self.handle = handle
        self.content_id = content_id
        self.content_type = content_type
        self.metadata = copy.deepcopy(metadata or {})
        self.registry = registry or DEFAULT_BLOCK_TYPES
        self.created_at = datetime.now(timezone.utc)

        self.blocks: list[Block] = []
        self.baseline: tuple[BlockSnapshot, ...] = ()
        self.history: list[HistoryEntry] = []
        self._index: dict[str, Block] = {}
        self._validation_cache: dict[str, CachedValidation] = {}
        self._new_id = BlockIdFactory()
        self._synced_content: Optional[str] = None

    @classmethod
    def create(
        cls,
        handle: str,
        content_id: Any,
        content: str,
        metadata: Optional[dict] = None,
        registry: Optional[BlockTypeRegistry] = None,
    ) -> "DocumentSession":
        """Open a session on raw content.

        Block markup is parsed directly; classic HTML is converted to markup
        first; anything else is treated as markup.

        Raises:
            BlockParseError: if block markup is malformed.
        """
        metadata = metadata or {}
        session = cls(
            handle,
            content_id,
            content_type=metadata.get('content_type', 'post'),
            metadata=metadata,
            registry=registry,
        )
        content = content or ''
        if is_block_document(content):
            blocks = parse_blocks(content, session._new_id)
        elif looks_like_classic_html(content):
            blocks = markup_to_block_list(html_to_markup(content), session._new_id)
        else:
            blocks = markup_to_block_list(content, session._new_id)

        session.blocks = blocks
        session.baseline = tuple(BlockSnapshot.of(block) for block in blocks)
        session._rebuild_index()
        logger.info(f"Session {handle}: {len(blocks)} blocks for {session.content_type} {content_id}")
        return session

    # -- reads ---------------------------------------------------------------

    def _rebuild_index(self) -> None:
        self._index = build_index(self.blocks)

    def _require(self, block_id: str) -> Block:
        block = self._index.get(block_id)
        if block is None:
            raise BlockNotFoundError(block_id)
        return block

    def __len__(self) -> int:
        return len(self.blocks)

    def __contains__(self, block_id: str) -> bool:
        return block_id in self._index

    def list_blocks(self, block_type: Optional[str] = None, has_content: bool = False) -> list[dict]:
        """Summaries of blocks in position order, optionally filtered."""
        selected = self.blocks
        if block_type:
            selected = [b for b in selected if b.type == block_type]
        if has_content:
            selected = [b for b in selected if (b.content or '').strip()]
        return [b.summary() for b in selected]

    def read_block(self, block_id: str) -> tuple[Block, Optional[CachedValidation]]:
        """A copy of the block and its cached validation (None if not validated)."""
        block = self._require(block_id)
        return block.clone(), self._validation_cache.get(block_id)

    # -- mutations -----------------------------------------------------------

    def _warnings_for(self, block: Block) -> list[str]:
        warnings = validate_block(block, self.registry)
        if warnings:
            logger.warning(f"Block validation warnings for {block.type}: {warnings}")
        return warnings

    @staticmethod
    def _restore(block: Block, backup: Block) -> None:
        restored = backup.clone()
        block.type = restored.type
        block.attributes = restored.attributes
        block.content = restored.content
        block.position = restored.position
        block.content_hash = restored.content_hash

    def edit_block(
        self,
        block_id: str,
        content: Optional[str] = None,
        attributes: Optional[dict] = None,
    ) -> MutationResult:
        """Merge new content and/or attributes into a block.

        Validation problems are returned as warnings; the edit always applies.
        If applying fails unexpectedly the block is restored and the error
        re-raised.
        """
        block = self._require(block_id)
        backup = block.clone()

        try:
            if content is not None:
                block.content = content
            if attributes is not None:
                merged = copy.deepcopy(block.attributes)
                merged.update(copy.deepcopy(dict(attributes)))
                block.attributes = merged
            warnings = self._warnings_for(block)
            block.refresh_hash()
        except Exception:
            self._restore(block, backup)
            logger.exception(f"Edit of block {block_id} failed; rolled back")
            raise

        self.history.append(HistoryEntry('edit', block_id, backup=backup))
        self._validation_cache.pop(block_id, None)

        if warnings:
            message = f"Block updated with {len(warnings)} validation warnings"
        else:
            message = "Block updated and validated successfully"
        return MutationResult(block=block.summary(), message=message, warnings=warnings)

    def insert_block(
        self,
        block_type: str,
        content: str,
        position: int,
        attributes: Optional[dict] = None,
    ) -> MutationResult:
        """Insert a new block; position is clamped into 0..N."""
        position = min(max(int(position), 0), len(self.blocks))
        block = Block(
            id=self._new_id(),
            type=block_type,
            attributes=copy.deepcopy(dict(attributes or {})),
            content=content or '',
            position=position,
        )
        warnings = self._warnings_for(block)
        block.refresh_hash()

        for existing in self.blocks:
            if existing.position >= position:
                existing.position += 1
        self.blocks.insert(position, block)
        self._rebuild_index()
        self.history.append(HistoryEntry('insert', block.id, new_position=position))

        if warnings:
            message = f"{block_type} block inserted with {len(warnings)} validation warnings"
        else:
            message = f"{block_type} block inserted at position {position}"
        return MutationResult(block=block.summary(), message=message, warnings=warnings)

    def delete_block(self, block_id: str) -> Block:
        """Remove a block; later blocks move up by one. Returns the removed block."""
        block = self._require(block_id)
        self.blocks.remove(block)
        for other in self.blocks:
            if other.position > block.position:
                other.position -= 1
        del self._index[block_id]
        self._validation_cache.pop(block_id, None)
        self.history.append(
            HistoryEntry('delete', block_id, backup=block.clone(), old_position=block.position)
        )
        return block

    def reorder_block(self, block_id: str, new_position: int) -> tuple[int, int]:
        """Move a block to new_position (clamped into 0..N-1).

        Returns (old_position, new_position).
        """
        block = self._require(block_id)
        old_position = block.position
        new_position = min(max(int(new_position), 0), len(self.blocks) - 1)
        if old_position == new_position:
            return old_position, new_position

        self.blocks.remove(block)
        self.blocks.insert(new_position, block)
        renumber(self.blocks)
        self.history.append(
            HistoryEntry('reorder', block_id, old_position=old_position, new_position=new_position)
        )
        return old_position, new_position

    def revert_block(self, block_id: str) -> dict:
        """Undo the most recent edit of a block (one level only)."""
        block = self._require(block_id)
        last = next((h for h in reversed(self.history) if h.block_id == block_id), None)
        if last is None or last.op != 'edit' or last.backup is None:
            raise NothingToRevertError(f"Block {block_id} has no edit to revert")

        position = block.position
        self._restore(block, last.backup)
        block.position = position
        self._validation_cache.pop(block_id, None)
        self.history.append(HistoryEntry('revert', block_id))
        return block.summary()

    # -- validation and change tracking --------------------------------------

    def validate(self, block_ids: Optional[list[str]] = None) -> ValidationReport:
        """Validate all blocks (or the given IDs) and cache per-block results."""
        if block_ids:
            targets = [self._index[i] for i in block_ids if i in self._index]
        else:
            targets = self.blocks

        report = validate_blocks(targets, self.registry)
        now = time.time()
        for block in targets:
            errors = report.per_block_errors.get(block.id, [])
            self._validation_cache[block.id] = CachedValidation(
                valid=not errors, errors=list(errors), timestamp=now
            )
        return report

    def get_changes(self) -> ChangeSet:
        """Classify blocks against the baseline by ID."""
        changes = ChangeSet()
        baseline = {snapshot.id: snapshot for snapshot in self.baseline}

        for block in self.blocks:
            original = baseline.pop(block.id, None)
            if original is None:
                changes.added.append(block.id)
            elif block.compute_hash() != original.hash:
                changes.modified.append(block.id)

        changes.deleted = list(baseline)
        return changes

    # -- output --------------------------------------------------------------

    def serialize(self) -> str:
        return serialize_blocks(self.blocks)

    def get_markup_view(self) -> str:
        """Approximate markup rendering of the current blocks (lossy)."""
        return blocks_to_markup(self.serialize())

    def prepare_sync(self, require_valid: bool = False) -> SyncPayload:
        """Auto-fix and serialize the document for writing back.

        With require_valid, a failing validation raises ValidationGateError
        before anything is changed. Otherwise the auto-fixer rewrites the
        working blocks, and if serialization still fails every block becomes
        a plain paragraph.
        """
        if require_valid:
            report = self.validate()
            if not report.valid:
                raise ValidationGateError(report)

        original_blocks = self.blocks
        result = fix_blocks(original_blocks, self.registry, self._new_id)
        fixes = list(result.fixes)
        self.blocks = result.blocks
        renumber(self.blocks)
        self._rebuild_index()
        self._validation_cache.clear()
        if fixes:
            logger.info(f"Session {self.handle}: {result.summary()}")

        try:
            content = self.serialize()
        except (TypeError, ValueError) as e:
            logger.error(f"Session {self.handle}: serialization failed ({e}); falling back to paragraphs")
            self.blocks = paragraph_fallback(original_blocks, self._new_id)
            self._rebuild_index()
            content = self.serialize()
            fixes.append(LAST_RESORT_FIX)

        return SyncPayload(
            content_id=self.content_id,
            content_type=self.content_type,
            content=content,
            metadata=copy.deepcopy(self.metadata),
            has_changes=self.get_changes().total > 0,
            fixes=fixes,
        )

    def mark_synced(self, content: str) -> None:
        """Remember what was last written to the platform."""
        self._synced_content = content

    def has_unsynced_changes(self) -> bool:
        if self.get_changes().total == 0:
            return False
        if self._synced_content is None:
            return True
        try:
            return self.serialize() != self._synced_content
        except (TypeError, ValueError):
            return True

    def summary(self) -> dict:
        return {
            "handle": self.handle,
            "content_id": self.content_id,
            "content_type": self.content_type,
            "block_count": len(self.blocks),
            "has_changes": self.get_changes().total > 0,
            "title": self.metadata.get('title'),
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# Session Store
# =============================================================================

DEFAULT_MAX_SESSIONS = 50
DEFAULT_SESSION_TTL = 3600.0  # seconds of inactivity before a session is evicted


class SessionStore:
    """Handle -> DocumentSession registry.

    Handles are opaque tokens; nothing about storage leaks through them.
    Lookup, insertion and removal are serialized by a lock. Sessions idle for
    longer than ttl are evicted, and at most max_sessions are kept.
    """

    def __init__(
        self,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        ttl: Optional[float] = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.monotonic,
        registry: Optional[BlockTypeRegistry] = None,
    ):
        self.max_sessions = max_sessions
        self.ttl = ttl
        self._clock = clock
        self._registry = registry
        self._sessions: dict[str, DocumentSession] = {}
        self._last_access: dict[str, float] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _new_handle() -> str:
        return f"wp-session-{secrets.token_hex(8)}"

    def evict_idle(self) -> list[str]:
        """Drop sessions idle longer than ttl. Returns the evicted handles."""
        if not self.ttl:
            return []
        with self._lock:
            now = self._clock()
            expired = [h for h, t in self._last_access.items() if now - t > self.ttl]
            for handle in expired:
                self._sessions.pop(handle, None)
                self._last_access.pop(handle, None)
                logger.info(f"Evicted idle session {handle}")
            return expired

    def create(self, content_id: Any, content: str, metadata: Optional[dict] = None) -> str:
        """Open a session on content and return its handle.

        Raises:
            SessionLimitError: when the store is full of active sessions.
            BlockParseError: when content has malformed block markup.
        """
        with self._lock:
            self.evict_idle()
            if len(self._sessions) >= self.max_sessions:
                raise SessionLimitError(
                    f"Too many open sessions ({self.max_sessions}); close some first"
                )
            handle = self._new_handle()
            while handle in self._sessions:
                handle = self._new_handle()
            session = DocumentSession.create(
                handle, content_id, content, metadata, registry=self._registry
            )
            self._sessions[handle] = session
            self._last_access[handle] = self._clock()
            return handle

    def get(self, handle: str) -> DocumentSession:
        with self._lock:
            self.evict_idle()
            session = self._sessions.get(handle)
            if session is None:
                raise SessionNotFoundError(handle)
            self._last_access[handle] = self._clock()
            return session

    def close(self, handle: str) -> DocumentSession:
        with self._lock:
            session = self._sessions.pop(handle, None)
            self._last_access.pop(handle, None)
            if session is None:
                raise SessionNotFoundError(handle)
            return session

    def list_sessions(self) -> list[dict]:
        with self._lock:
            self.evict_idle()
            return [session.summary() for session in self._sessions.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, handle: str) -> bool:
        with self._lock:
            return handle in self._sessions


# =============================================================================
# WordPress REST Client
# =============================================================================

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

# Fields forwarded from session metadata on update
UPDATABLE_FIELDS = ('title', 'status', 'excerpt')


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract WordPress's error message from an HTTP status error."""
    if e.response is None:
        return str(e)
    try:
        body = e.response.json()
    except ValueError:
        return e.response.text[:max_len]
    if isinstance(body, dict) and body.get('message'):
        return str(body['message'])[:max_len]
    return e.response.text[:max_len]


def _rendered_or_raw(value: Any) -> str:
    if isinstance(value, dict):
        return value.get('raw') if value.get('raw') is not None else value.get('rendered', '')
    return value or ''


class WordPressClient:
    """Minimal async client for the WordPress REST API (wp/v2).

    Authenticates with an application password over HTTP Basic auth.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        app_password: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("WordPress URL is required")
        if not username or not app_password:
            raise ValueError("WordPress username and application password are required")
        self.base_url = base_url.rstrip('/')
        # Application passwords are displayed with spaces; the API ignores them
        self._auth = httpx.BasicAuth(username, re.sub(r'\s', '', app_password))
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/wp-json/wp/v2",
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request with retry on rate limiting."""
        client = self._get_client()
        for attempt in range(MAX_RETRIES):
            response = await client.request(method, endpoint, json=json_body, params=params)
            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                retry_after = response.headers.get("Retry-After")
                delay = _compute_retry_delay(
                    attempt, float(retry_after) if retry_after else None
                )
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue
            response.raise_for_status()
            return response.json()

        raise RuntimeError(f"Max retries ({MAX_RETRIES}) exceeded")  # pragma: no cover

    @staticmethod
    def _collection(content_type: str) -> str:
        if content_type not in CONTENT_TYPES:
            raise ValueError(f"content_type must be one of {CONTENT_TYPES}, got {content_type!r}")
        return f"/{content_type}s"

    async def fetch(self, content_id: int, content_type: str = 'post') -> dict:
        """Fetch raw (editable) title, content and status of a post or page."""
        data = await self.request(
            "GET", f"{self._collection(content_type)}/{content_id}", params={"context": "edit"}
        )
        return {
            "title": _rendered_or_raw(data.get('title')),
            "content": _rendered_or_raw(data.get('content')),
            "status": data.get('status'),
        }

    async def update(
        self,
        content_id: int,
        content: str,
        metadata: Optional[dict] = None,
        content_type: str = 'post',
    ) -> dict:
        body: dict[str, Any] = {"content": content}
        for key in UPDATABLE_FIELDS:
            if metadata and metadata.get(key) is not None:
                body[key] = metadata[key]
        return await self.request("POST", f"{self._collection(content_type)}/{content_id}", json_body=body)

    async def create(self, content_type: str, title: str, content: str, status: str = 'draft') -> dict:
        return await self.request(
            "POST",
            self._collection(content_type),
            json_body={"title": title, "content": content, "status": status},
        )

    async def current_user(self) -> dict:
        return await self.request("GET", "/users/me")


# =============================================================================
# Tool Implementations
# =============================================================================


@dataclass
class AppContext:
    """What every tool needs: the session store and the platform client."""
    store: SessionStore
    client: Optional[WordPressClient] = None


def _render_block_line(summary: dict) -> str:
    """One compact line per block: position, ID, type, attributes, preview."""
    attrs = ''
    if summary['attributes']:
        attrs = ' ' + json.dumps(summary['attributes'], separators=(',', ':'), default=str)
    changed = ' *' if summary['has_changes'] else ''
    return f"{summary['position']:>3} {summary['id']} {summary['type']}{attrs}{changed} | {summary['preview']}"


def _render_warnings(warnings: list[str]) -> list[str]:
    return [f"  ⚠ {warning}" for warning in warnings]


def _http_failure(e: httpx.HTTPStatusError, ref: str | None = None) -> str:
    status = e.response.status_code if e.response is not None else None
    if status in (401, 403):
        return _error("UNAUTHORIZED", _http_error_detail(e, 200), hint=HINTS["UNAUTHORIZED"], ref=ref)
    if status == 404:
        return _error("NOT_FOUND", _http_error_detail(e, 200), hint=HINTS["NOT_FOUND"], ref=ref)
    if status == 429:
        return _error("RATE_LIMITED", "Too many requests", hint=HINTS["RATE_LIMITED"])
    return _error("HTTP_ERROR", f"HTTP {status}: {_http_error_detail(e, 100)}", ref=ref)


def _render_session_opened(session: DocumentSession, title: str | None) -> str:
    lines = [
        f"handle: {session.handle}",
        f"{session.content_type} {session.content_id}: {title or '(untitled)'}",
        f"{len(session)} blocks",
    ]
    lines.extend(_render_block_line(summary) for summary in session.list_blocks())
    return "\n".join(lines)


async def _pull_impl(app: AppContext, content_id: int, content_type: str) -> str:
    if app.client is None:
        return _error("NO_CLIENT", "No WordPress connection configured", hint=HINTS["NO_CLIENT"])
    if content_type not in CONTENT_TYPES:
        return _error("INVALID_ARGUMENT", f"content_type must be 'post' or 'page', got {content_type!r}")
    try:
        fetched = await app.client.fetch(content_id, content_type)
    except httpx.HTTPStatusError as e:
        return _http_failure(e, ref=str(content_id))

    metadata = {
        "title": fetched["title"],
        "status": fetched["status"],
        "content_type": content_type,
    }
    try:
        handle = app.store.create(content_id, fetched["content"], metadata)
    except BlockEngineError as e:
        return _engine_error(e, ref=str(content_id))
    return _render_session_opened(app.store.get(handle), fetched["title"])


def _list_blocks_impl(store: SessionStore, handle: str, block_type: str | None, has_content: bool) -> str:
    try:
        session = store.get(handle)
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)
    summaries = session.list_blocks(block_type=block_type, has_content=has_content)
    lines = [_render_block_line(summary) for summary in summaries]
    if len(summaries) < len(session):
        lines.append(f"--- showing {len(summaries)} of {len(session)} blocks")
    else:
        lines.append(f"--- {len(session)} blocks")
    return "\n".join(lines)


def _read_block_impl(store: SessionStore, handle: str, block_id: str) -> str:
    try:
        block, cached = store.get(handle).read_block(block_id)
    except BlockEngineError as e:
        return _engine_error(e, ref=block_id)
    lines = [
        f"id: {block.id}",
        f"type: {block.type}",
        f"position: {block.position}",
        f"attributes: {json.dumps(block.attributes, default=str)}",
    ]
    if cached is None:
        lines.append("validation: not run")
    elif cached.valid:
        lines.append("validation: ok")
    else:
        lines.append("validation: " + "; ".join(cached.errors))
    lines.append("---")
    lines.append(block.content)
    return "\n".join(lines)


def _render_mutation(result: MutationResult) -> str:
    lines = [result.message, _render_block_line(result.block)]
    lines.extend(_render_warnings(result.warnings))
    return "\n".join(lines)


def _edit_block_impl(
    store: SessionStore,
    handle: str,
    block_id: str,
    content: str | None,
    attributes: dict | None,
) -> str:
    if content is None and attributes is None:
        return _error("INVALID_ARGUMENT", "Provide content and/or attributes to update")
    try:
        result = store.get(handle).edit_block(block_id, content=content, attributes=attributes)
    except BlockEngineError as e:
        return _engine_error(e, ref=block_id)
    return _render_mutation(result)


def _insert_block_impl(
    store: SessionStore,
    handle: str,
    block_type: str,
    content: str,
    position: int,
    attributes: dict | None,
) -> str:
    try:
        result = store.get(handle).insert_block(block_type, content, position, attributes)
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)
    return _render_mutation(result)


def _delete_block_impl(store: SessionStore, handle: str, block_id: str) -> str:
    try:
        session = store.get(handle)
        session.delete_block(block_id)
    except BlockEngineError as e:
        return _engine_error(e, ref=block_id)
    return f"deleted {block_id}; {len(session)} blocks remain"


def _reorder_block_impl(store: SessionStore, handle: str, block_id: str, new_position: int) -> str:
    try:
        old, new = store.get(handle).reorder_block(block_id, new_position)
    except BlockEngineError as e:
        return _engine_error(e, ref=block_id)
    if old == new:
        return f"{block_id} already at position {new}"
    return f"moved {block_id}: {old}→{new}"


def _revert_block_impl(store: SessionStore, handle: str, block_id: str) -> str:
    try:
        summary = store.get(handle).revert_block(block_id)
    except BlockEngineError as e:
        return _engine_error(e, ref=block_id)
    return "reverted\n" + _render_block_line(summary)


def _validate_impl(store: SessionStore, handle: str, block_ids: list[str] | None) -> str:
    try:
        session = store.get(handle)
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)
    report = session.validate(block_ids)
    if report.valid:
        return "valid: all blocks ok"

    lines = [f"invalid: {len(report.errors)} error(s)"]
    for block_id, errors in report.per_block_errors.items():
        lines.append(f"{block_id}:")
        lines.extend(f"  - {error}" for error in errors)
        if block_id in session and any('attribute' in error.lower() for error in errors):
            block_type = session.read_block(block_id)[0].type
            schema = attribute_help(block_type, session.registry)
            if schema:
                lines.append(f"  {block_type} attributes: {json.dumps(schema, separators=(',', ':'))}")
    context_errors = report.errors[len(report.per_block_errors):]
    lines.extend(f"document: {error}" for error in context_errors)
    all_errors = [e for errs in report.per_block_errors.values() for e in errs] + context_errors
    suggestions = suggestions_for_errors(all_errors, session.registry)
    if suggestions:
        lines.append("hints:")
        lines.extend(f"  {s}" for s in suggestions)
    return "\n".join(lines)


def _changes_impl(store: SessionStore, handle: str) -> str:
    try:
        changes = store.get(handle).get_changes()
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)
    if changes.total == 0:
        return "no changes"
    lines = []
    lines.extend(f"~ {block_id}" for block_id in changes.modified)
    lines.extend(f"+ {block_id}" for block_id in changes.added)
    lines.extend(f"x {block_id}" for block_id in changes.deleted)
    lines.append("---")
    lines.append(
        f"{len(changes.modified)} modified, {len(changes.added)} added, "
        f"{len(changes.deleted)} deleted"
    )
    return "\n".join(lines)


def _markup_view_impl(store: SessionStore, handle: str) -> str:
    try:
        return store.get(handle).get_markup_view()
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)


async def _sync_impl(app: AppContext, handle: str, require_valid: bool, close: bool) -> str:
    if app.client is None:
        return _error("NO_CLIENT", "No WordPress connection configured", hint=HINTS["NO_CLIENT"])
    try:
        session = app.store.get(handle)
        payload = session.prepare_sync(require_valid=require_valid)
    except ValidationGateError as e:
        lines = [_engine_error(e, ref=handle)]
        lines.extend(f"  - {error}" for error in e.report.errors)
        return "\n".join(lines)
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)

    try:
        await app.client.update(
            payload.content_id, payload.content, payload.metadata, content_type=payload.content_type
        )
    except httpx.HTTPStatusError as e:
        return _http_failure(e, ref=str(payload.content_id))

    session.mark_synced(payload.content)
    lines = [f"synced {payload.content_type} {payload.content_id}", payload.summary]
    lines.extend(f"  fix: {fix}" for fix in payload.fixes)
    if close:
        app.store.close(handle)
        lines.append(f"closed {handle}")
    return "\n".join(lines)


def _close_impl(store: SessionStore, handle: str, force: bool) -> str:
    try:
        session = store.get(handle)
    except BlockEngineError as e:
        return _engine_error(e, ref=handle)
    if not force and session.has_unsynced_changes():
        changes = session.get_changes()
        return _error(
            "UNSAVED_CHANGES",
            f"{len(changes.modified)} modified, {len(changes.added)} added, "
            f"{len(changes.deleted)} deleted",
            hint="Use wp_sync to save, or close with force=true to discard.",
            ref=handle,
        )
    store.close(handle)
    return f"closed {handle}"


def _list_sessions_impl(store: SessionStore) -> str:
    sessions = store.list_sessions()
    if not sessions:
        return "no open sessions"
    lines = []
    for info in sessions:
        changed = ' *' if info['has_changes'] else ''
        lines.append(
            f"{info['handle']} {info['content_type']} {info['content_id']} "
            f"({info['block_count']} blocks){changed} {info['title'] or ''}".rstrip()
        )
    return "\n".join(lines)


async def _draft_impl(app: AppContext, title: str, markup: str, content_type: str) -> str:
    if app.client is None:
        return _error("NO_CLIENT", "No WordPress connection configured", hint=HINTS["NO_CLIENT"])
    if content_type not in CONTENT_TYPES:
        return _error("INVALID_ARGUMENT", f"content_type must be 'post' or 'page', got {content_type!r}")

    block_markup = markup_to_blocks(markup)
    try:
        created = await app.client.create(content_type, title, block_markup, status='draft')
    except httpx.HTTPStatusError as e:
        return _http_failure(e)

    metadata = {"title": title, "status": created.get('status', 'draft'), "content_type": content_type}
    try:
        handle = app.store.create(created['id'], block_markup, metadata)
    except BlockEngineError as e:
        return _engine_error(e, ref=str(created['id']))
    return _render_session_opened(app.store.get(handle), title)


# =============================================================================
# MCP Tools
# =============================================================================


def _app(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


async def wp_pull_for_editing(content_id: int, ctx: Context, content_type: str = "post") -> str:
    """Open a WordPress post or page for block-level editing.

    Args:
        content_id: WordPress post or page ID.
        content_type: "post" (default) or "page".

    Returns:
        A session handle followed by one line per block:
            handle: wp-session-1a2b3c4d5e6f7a8b
            post 42: My Title
            3 blocks
              0 block-1-9f8e7d6c core/heading {"level":1} | Title
              1 block-2-5a4b3c2d core/paragraph | Body text...

        Pass the handle to every other wp_* tool. Classic (non-block)
        content is converted to blocks on open.
    """
    return await _pull_impl(_app(ctx), content_id, content_type)


async def wp_list_blocks(
    handle: str,
    ctx: Context,
    block_type: str | None = None,
    has_content: bool = False,
) -> str:
    """List blocks in position order.

    Args:
        handle: Session handle from wp_pull_for_editing.
        block_type: Only blocks of this type (e.g. "core/paragraph").
        has_content: Only blocks with non-blank content.

    Returns:
        "<pos> <id> <type> [attrs] [*] | <preview>" per block; * marks blocks
        changed since the session opened.
    """
    return _list_blocks_impl(_app(ctx).store, handle, block_type, has_content)


async def wp_read_block(handle: str, block_id: str, ctx: Context) -> str:
    """Read one block's full content, attributes and last validation result."""
    return _read_block_impl(_app(ctx).store, handle, block_id)


async def wp_edit_block(
    handle: str,
    block_id: str,
    ctx: Context,
    content: str | None = None,
    attributes: dict | None = None,
) -> str:
    """Edit a block's content and/or attributes.

    Attributes are merged into the existing ones. The edit always applies;
    validation problems come back as ⚠ warnings to fix in a later edit.

    Args:
        handle: Session handle.
        block_id: Block to edit.
        content: New block HTML, e.g. "<p>Updated <strong>text</strong></p>".
        attributes: Attributes to set, e.g. {"level": 3}.
    """
    return _edit_block_impl(_app(ctx).store, handle, block_id, content, attributes)


async def wp_insert_block(
    handle: str,
    block_type: str,
    content: str,
    position: int,
    ctx: Context,
    attributes: dict | None = None,
) -> str:
    """Insert a new block at a 0-based position (clamped to the document).

    Block types: core/paragraph, core/heading (needs {"level": 1-6}),
    core/list ({"ordered": true|false}), core/quote, core/code, core/image
    (needs {"url": ...}), core/separator, core/table.

    Like edits, inserts always apply; validation problems come back as warnings.
    """
    return _insert_block_impl(_app(ctx).store, handle, block_type, content, position, attributes)


async def wp_delete_block(handle: str, block_id: str, ctx: Context) -> str:
    """Delete a block. Later blocks move up one position."""
    return _delete_block_impl(_app(ctx).store, handle, block_id)


async def wp_reorder_block(handle: str, block_id: str, new_position: int, ctx: Context) -> str:
    """Move a block to a new 0-based position."""
    return _reorder_block_impl(_app(ctx).store, handle, block_id, new_position)


async def wp_revert_block(handle: str, block_id: str, ctx: Context) -> str:
    """Undo the most recent edit of a block. Only one level of undo is kept."""
    return _revert_block_impl(_app(ctx).store, handle, block_id)


async def wp_validate_blocks(handle: str, ctx: Context, block_ids: list[str] | None = None) -> str:
    """Validate blocks (all, or the given IDs) without saving.

    Checks types, attribute schemas, required content, balanced tags,
    supported inline formats, and adjacent list blocks.
    """
    return _validate_impl(_app(ctx).store, handle, block_ids)


async def wp_get_changes(handle: str, ctx: Context) -> str:
    """Show blocks modified (~), added (+) and deleted (x) since the session opened."""
    return _changes_impl(_app(ctx).store, handle)


async def wp_view_markup(handle: str, ctx: Context) -> str:
    """Read the whole document as approximate markdown (lossy, read-only view)."""
    return _markup_view_impl(_app(ctx).store, handle)


async def wp_sync(handle: str, ctx: Context, require_valid: bool = False, close: bool = False) -> str:
    """Write the session's blocks back to WordPress.

    Blocks are auto-fixed first (heading levels, missing wrappers, images
    without URLs become placeholders); the applied fixes are listed.

    Args:
        handle: Session handle.
        require_valid: Refuse to sync while wp_validate_blocks reports errors.
        close: Close the session after a successful sync.
    """
    return await _sync_impl(_app(ctx), handle, require_valid, close)


async def wp_close_session(handle: str, ctx: Context, force: bool = False) -> str:
    """Close a session. Refuses when there are unsynced changes unless force=true."""
    return _close_impl(_app(ctx).store, handle, force)


async def wp_list_sessions(ctx: Context) -> str:
    """List open editing sessions."""
    return _list_sessions_impl(_app(ctx).store)


async def wp_draft_from_markup(title: str, markup: str, ctx: Context, content_type: str = "post") -> str:
    """Create a WordPress draft from markdown-style markup and open it for editing.

    Supported markup: # headings, paragraphs, - / 1. lists, > quotes, ---,
    ![alt](url) images, | tables |, ``` code fences, and inline **bold**,
    *italic*, `code`, [links](url), ~~strike~~.
    """
    return await _draft_impl(_app(ctx), title, markup, content_type)


TOOLS = [
    wp_pull_for_editing,
    wp_list_blocks,
    wp_read_block,
    wp_edit_block,
    wp_insert_block,
    wp_delete_block,
    wp_reorder_block,
    wp_revert_block,
    wp_validate_blocks,
    wp_get_changes,
    wp_view_markup,
    wp_sync,
    wp_close_session,
    wp_list_sessions,
    wp_draft_from_markup,
]

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 2053


def create_server(app: AppContext, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> FastMCP:
    """Build the MCP server; tools reach app through the lifespan context."""

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        yield app

    server = FastMCP("wordpress-mcp", host=host, port=port, lifespan=lifespan)
    for tool in TOOLS:
        server.tool()(tool)
    return server


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================


def make_health_endpoint(app: AppContext):
    async def health_endpoint(request: Request) -> JSONResponse:
        """Health check endpoint for easy testing."""
        connection = None
        if app.client is not None:
            try:
                user = await app.client.current_user()
                connection = user.get("name", "connected")
            except Exception as e:
                connection = f"error: {type(e).__name__}"

        return JSONResponse({
            "status": "ok",
            "client_configured": app.client is not None,
            "user": connection,
            "sessions": len(app.store),
        })

    return health_endpoint


# =============================================================================
# Main Entry Point
# =============================================================================


def _read_password(path: str | None) -> str | None:
    if path is None:
        return os.environ.get("WORDPRESS_APP_PASSWORD")
    password_path = Path(path).expanduser()
    if not password_path.exists():
        logger.error(f"Password file not found: {password_path}")
        raise SystemExit(1)
    password = password_path.read_text().strip()
    if not password:
        logger.error("Password file is empty")
        raise SystemExit(1)
    return password


def main():
    """Run the WordPress MCP server.

    Supports two transport modes:
    - stdio (default): for an MCP client to launch directly
    - http: standalone server on port 2053

    Usage:
        wordpress-mcp --url https://example.com --username me --password-file ~/.wp-app-password
        wordpress-mcp ... --http
    """
    import argparse

    parser = argparse.ArgumentParser(description="WordPress MCP Server")
    parser.add_argument("--url", default=os.environ.get("WORDPRESS_URL"),
                        help="WordPress site URL (default: $WORDPRESS_URL)")
    parser.add_argument("--username", default=os.environ.get("WORDPRESS_USERNAME"),
                        help="WordPress username (default: $WORDPRESS_USERNAME)")
    parser.add_argument("--password-file",
                        help="File containing an application password (default: $WORDPRESS_APP_PASSWORD)")
    parser.add_argument("--max-sessions", type=int, default=DEFAULT_MAX_SESSIONS,
                        help=f"Maximum open editing sessions (default {DEFAULT_MAX_SESSIONS})")
    parser.add_argument("--session-ttl", type=float, default=DEFAULT_SESSION_TTL,
                        help="Seconds of inactivity before a session is discarded (0 disables)")
    parser.add_argument("--http", action="store_true",
                        help=f"Run as HTTP server on localhost:{DEFAULT_PORT} instead of stdio")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    password = _read_password(args.password_file)
    if not (args.url and args.username and password):
        logger.error("WordPress URL, username and application password are all required")
        raise SystemExit(1)

    app = AppContext(
        store=SessionStore(max_sessions=args.max_sessions, ttl=args.session_ttl or None),
        client=WordPressClient(args.url, args.username, password),
    )
    logger.info(f"WordPress site: {app.client.base_url}")
    server = create_server(app)

    if args.http:
        import uvicorn

        http_app = server.streamable_http_app()
        http_app.add_route("/health", make_health_endpoint(app), methods=["GET"])

        logger.info(f"Starting WordPress MCP server on http://{DEFAULT_HOST}:{DEFAULT_PORT}")
        uvicorn.run(http_app, host=DEFAULT_HOST, port=DEFAULT_PORT, log_level="warning")
    else:
        server.run()


if __name__ == "__main__":
    main()
