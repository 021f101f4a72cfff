"""Scribe MCP server: a screenwriter's note library stored in Notion.

Entries (ideas, characters, past stories, random notes) live in four Notion
databases. Categorical fields (title, idea type, tags) are page properties;
free-text fields are stored in the page body as headed sections.

Provides:
- MCP tools: scribe_save, scribe_read, scribe_edit, scribe_recent,
  scribe_search, scribe_tags
- JSON API (--http mode): /api/<type>, /api/entry/<id>, /api/tags,
  /api/materials, /api/search

Token: Passed via --token-file <path> CLI argument at startup.
"""

import asyncio
import logging
import os
import random
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx
import parsy as P
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

logger = logging.getLogger("scribe")

# =============================================================================
# Async Rate Limiting
# =============================================================================

# Semaphore to limit concurrent Notion API requests (Notion limit: ~3 req/sec)
_notion_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

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


def _http_error_detail(e: httpx.HTTPError, max_len: int = 300) -> str:
    """Extract a short error detail from an httpx error.

    Notion error bodies carry a JSON "message"; fall back to the raw body
    text, then to the exception string.
    """
    response = getattr(e, "response", None)
    if response is None:
        return str(e)
    try:
        body = response.json()
    except ValueError:
        body = None
    message = body.get("message") if isinstance(body, dict) else None
    return (message or response.text)[:max_len]


def _get_semaphore() -> asyncio.Semaphore:
    """Get or create the rate-limiting semaphore."""
    global _notion_semaphore
    if _notion_semaphore is None:
        _notion_semaphore = asyncio.Semaphore(50)
    return _notion_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


# =============================================================================
# Credential Management
# =============================================================================

_notion_token: Optional[str] = None


def _get_token() -> str:
    """Get the Notion token (set via --token-file CLI arg)."""
    if _notion_token is None:
        raise RuntimeError(
            "No Notion token. Pass --token-file <path> on the command line."
        )
    return _notion_token


# =============================================================================
# Errors
# =============================================================================


class ScribeError(Exception):
    """Base class for errors surfaced to Scribe callers."""

    code = "SCRIBE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EntryValidationError(ScribeError):
    """Caller input rejected before any network call."""

    code = "VALIDATION"


class ConfigError(ScribeError):
    """A database the operation needs has not been configured."""

    code = "NOT_CONFIGURED"


class StoreError(ScribeError):
    """A Notion call failed. Not retried."""

    code = "STORE_ERROR"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @classmethod
    def from_http(cls, action: str, e: httpx.HTTPError) -> "StoreError":
        response = getattr(e, "response", None)
        status = response.status_code if response is not None else None
        prefix = f"HTTP {status}: " if status else ""
        return cls(f"Failed to {action}: {prefix}{_http_error_detail(e, 200)}", status=status)


@contextmanager
def _store_call(action: str):
    """Re-raise transport failures inside the block as StoreError."""
    try:
        yield
    except httpx.HTTPError as e:
        raise StoreError.from_http(action, e) from e


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format an error for MCP tool output.

    Args:
        code: Error code (e.g., VALIDATION, STORE_ERROR)
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


HINTS = {
    "not_found": "The page may be deleted or not shared with this integration. Use scribe_search to find it by title.",
    "missing_capability": "Share the Scribe databases with the integration: open in Notion → Share → invite the integration.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "invalid_token": "Token is invalid or expired. Check the file passed to --token-file.",
    "not_configured": "Pass the database IDs (--ideas-db etc.) or set NOTION_*_DB_ID. Run --setup to create them.",
}

_STATUS_HINTS = {
    401: "invalid_token",
    403: "missing_capability",
    404: "not_found",
    429: "rate_limited",
}


def _tool_error(e: ScribeError, ref: str | None = None) -> str:
    """Render a ScribeError as tool output with the matching hint."""
    hint_key = None
    if isinstance(e, StoreError) and e.status in _STATUS_HINTS:
        hint_key = _STATUS_HINTS[e.status]
    elif isinstance(e, ConfigError):
        hint_key = "not_configured"
    return _error(e.code, e.message, hint=HINTS.get(hint_key) if hint_key else None, ref=ref)


# =============================================================================
# ID Handling
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion page UUID from a URL.

    Handles formats like:
    - https://notion.so/workspace/Lighthouse-Keeper-abc123def456...
    - https://www.notion.so/abc123def456...

    Returns:
        Normalized UUID or None if not found.
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_entry_id(ref: str) -> str:
    """Resolve a page UUID (dashed or not) or Notion URL to a normalized UUID."""
    ref = (ref or "").strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    if ref.startswith("http"):
        uuid = extract_uuid_from_url(ref)
        if uuid:
            return uuid
    raise EntryValidationError(f"Not a Notion page ID or URL: {ref!r}")


def _compact_id(value: Optional[str]) -> str:
    return (value or "").replace("-", "").lower()


# =============================================================================
# Data Model
# =============================================================================


class RecordType(Enum):
    """The four kinds of Scribe entry. Fixed at creation."""
    IDEA = "idea"
    CHARACTER = "character"
    STORY = "story"
    RANDOM = "random"

    @property
    def schema(self) -> "RecordSchema":
        return RECORD_SCHEMAS[self]

    @classmethod
    def parse(cls, name: Optional[str]) -> "RecordType":
        """Accept a singular wire name ("idea") or collection name ("ideas")."""
        key = (name or "").strip().lower()
        for record_type, schema in RECORD_SCHEMAS.items():
            if key in (record_type.value, schema.collection):
                return record_type
        raise EntryValidationError(f"Unknown record type: {name!r}")


@dataclass(frozen=True)
class RecordSchema:
    """Fixed property and body layout of one record type's database."""
    database_title: str
    collection: str
    env_var: str
    title_property: str
    label_key: str
    required_message: str
    fallback_label: str
    # (payload key, section heading) in body order
    body_fields: tuple[tuple[str, str], ...]
    has_category: bool = False


RECORD_SCHEMAS: dict[RecordType, RecordSchema] = {
    RecordType.IDEA: RecordSchema(
        database_title="Ideas",
        collection="ideas",
        env_var="NOTION_IDEAS_DB_ID",
        title_property="Title",
        label_key="title",
        required_message="Title is required",
        fallback_label="Untitled",
        body_fields=(("details", "Details"),),
        has_category=True,
    ),
    RecordType.CHARACTER: RecordSchema(
        database_title="Characters",
        collection="characters",
        env_var="NOTION_CHARACTERS_DB_ID",
        title_property="Name",
        label_key="name",
        required_message="Name is required",
        fallback_label="Unnamed",
        body_fields=(
            ("description", "Description"),
            ("when_encountered", "When I encountered them"),
            ("why_interesting", "Why they are interesting"),
        ),
    ),
    RecordType.STORY: RecordSchema(
        database_title="Past Stories",
        collection="stories",
        env_var="NOTION_STORIES_DB_ID",
        title_property="What",
        label_key="what",
        required_message='"What" is required',
        fallback_label="Untitled",
        body_fields=(
            ("when", "When"),
            ("why_interesting", "Why interesting"),
        ),
    ),
    RecordType.RANDOM: RecordSchema(
        database_title="Random",
        collection="random",
        env_var="NOTION_RANDOM_DB_ID",
        title_property="Title",
        label_key="title",
        required_message="Title is required",
        fallback_label="Untitled",
        body_fields=(("details", "Details"),),
    ),
}

IDEA_CATEGORIES = ("Script Idea", "Scene Idea")

TAGS_PROPERTY = "Tags"
CATEGORY_PROPERTY = "Type"


@dataclass(frozen=True)
class Section:
    """One headed run of free text in a page body."""
    heading: Optional[str]
    content: str

    def to_dict(self) -> dict:
        return {"heading": self.heading, "content": self.content}


def normalize_text(value: Any) -> Optional[str]:
    """Trim a free-text value; empty or missing becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_tags(tags: Iterable[Any]) -> list[str]:
    """Trim tags and drop empties and exact duplicates, keeping first-seen order."""
    seen: set[str] = set()
    result = []
    for tag in tags:
        name = normalize_text(tag)
        if name is None or name in seen:
            continue
        seen.add(name)
        result.append(name)
    return result


def _make_tag_list_parser():
    """Build the parser for comma-separated tag lists.

    Items are bare text or double-quoted (to allow commas inside a tag):
        noir, heist, "love, lost"
    """
    ws = P.regex(r'\s*')
    quoted = P.string('"') >> P.regex(r'[^"]*') << P.string('"')
    bare = P.regex(r'[^,"]+')
    item = ws >> (quoted | bare | P.success('')) << ws
    return item.sep_by(P.string(','))


_tag_list_parser = _make_tag_list_parser()


def parse_tag_list(text: str) -> list[str]:
    """Parse a comma-separated tag list into normalized tag names.

    Raises:
        EntryValidationError: On an unterminated or misplaced quote.
    """
    if not text or not text.strip():
        return []
    try:
        return normalize_tags(_tag_list_parser.parse(text))
    except P.ParseError as e:
        raise EntryValidationError(f"Could not parse tags {text!r}: {e}") from e


def coerce_tags(value: Any) -> list[str]:
    """Accept tags as a list of strings or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return parse_tag_list(value)
    if isinstance(value, (list, tuple, set)):
        return normalize_tags(value)
    raise EntryValidationError("Tags must be a list of strings or a comma-separated string")


def _camel_case(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


CATEGORY_KEYS = ("ideaType", "category")
# On the create routes "type" is free, since the record type is in the path
CREATE_CATEGORY_KEYS = ("type",) + CATEGORY_KEYS


def _payload_value(payload: dict, *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def sections_from_payload(raw: Any) -> list[Section]:
    """Read caller-supplied [{heading, content}] sections, dropping empty ones."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise EntryValidationError("Sections must be a list of {heading, content} objects")
    sections = []
    for item in raw:
        if not isinstance(item, dict):
            raise EntryValidationError("Each section must be an object with heading and content")
        content = normalize_text(item.get("content"))
        if content is None:
            continue
        sections.append(Section(normalize_text(item.get("heading")), content))
    check_section_headings(sections)
    return sections


def check_section_headings(sections: Iterable[Section]) -> None:
    """Only the first non-blank section may lack a heading.

    A headless section anywhere else would decode as part of the section
    before it.
    """
    written = [s for s in sections if (s.content or "").strip()]
    for position, section in enumerate(written):
        if position > 0 and not section.heading:
            raise EntryValidationError(
                f"Section {position + 1} has no heading; only the first section may omit it"
            )


@dataclass
class EntryDraft:
    """Caller input for creating or editing one entry.

    Built once from a request payload via from_payload, which is the only
    place free text is normalized. The body is held as ready-to-encode
    sections.
    """
    record_type: RecordType
    label: Optional[str]
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)

    @property
    def schema(self) -> RecordSchema:
        return RECORD_SCHEMAS[self.record_type]

    @classmethod
    def from_payload(
        cls,
        record_type: RecordType,
        payload: dict,
        category_keys: tuple[str, ...] = CATEGORY_KEYS,
    ) -> "EntryDraft":
        """Build a draft from a JSON-style payload.

        Accepts the label under the type's own key ("title", "name", "what")
        or "label", the idea category under category_keys, body fields in
        snake_case or camelCase, and an explicit "sections" list which takes
        precedence over body fields.
        """
        schema = RECORD_SCHEMAS[record_type]
        label = normalize_text(_payload_value(payload, schema.label_key, "label"))
        category = None
        if schema.has_category:
            category = normalize_text(_payload_value(payload, *category_keys))

        if payload.get("sections") is not None:
            sections = sections_from_payload(payload["sections"])
        else:
            sections = []
            for key, heading in schema.body_fields:
                content = normalize_text(_payload_value(payload, key, _camel_case(key)))
                if content is not None:
                    sections.append(Section(heading, content))

        return cls(
            record_type=record_type,
            label=label,
            category=category,
            tags=coerce_tags(payload.get("tags")),
            sections=sections,
        )

    def validate(self) -> None:
        if self.label is None:
            raise EntryValidationError(self.schema.required_message)
        if self.category is not None and self.category not in IDEA_CATEGORIES:
            raise EntryValidationError(
                f"Type must be one of {', '.join(IDEA_CATEGORIES)} (got {self.category!r})"
            )
        check_section_headings(self.sections)


@dataclass
class Entry:
    """Summary of a stored entry, as listed and searched."""
    id: str
    record_type: RecordType
    label: str
    url: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "type": self.record_type.value,
            "id": self.id,
            "url": self.url,
            "createdAt": self.created_at,
            "title": self.label,
            "tags": list(self.tags),
        }
        if self.record_type.schema.has_category:
            result["ideaType"] = self.category
        return result


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"


async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make authenticated async request to Notion API with rate limiting and retry.

    Uses a semaphore to limit concurrent requests and exponential backoff
    for rate limit errors (429). Other errors are raised immediately.
    """
    token = _get_token()
    sem = _get_semaphore()
    client = await _get_async_client()

    headers = {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }

    url = f"{NOTION_API_BASE}{endpoint}"

    async with sem:
        for attempt in range(MAX_RETRIES):
            if method == "GET":
                response = await client.get(url, headers=headers)
            elif method == "POST":
                response = await client.post(url, headers=headers, json=json_body or {})
            elif method == "PATCH":
                response = await client.patch(url, headers=headers, json=json_body or {})
            elif method == "DELETE":
                response = await client.delete(url, headers=headers)
            else:
                raise ValueError(f"Unsupported method: {method}")

            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                retry_after = float(response.headers.get("Retry-After", RETRY_BASE_DELAY))
                delay = _compute_retry_delay(attempt, retry_after)
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue

            response.raise_for_status()
            return response.json()

    raise RuntimeError(f"No request attempted (MAX_RETRIES={MAX_RETRIES})")


# =============================================================================
# Page Blocks
# =============================================================================

# Notion limits per request
MAX_APPEND_BLOCKS = 100
RICH_TEXT_MAX_LEN = 2000


async def list_page_blocks_async(page_id: str) -> list[dict]:
    """List the top-level child blocks of a page, following pagination.

    Unlike a best-effort render, a failed page of results is raised: a
    partial block list would silently drop sections.
    """
    blocks: list[dict] = []
    start_cursor = None

    while True:
        endpoint = f"/blocks/{page_id}/children?page_size=100"
        if start_cursor:
            endpoint += f"&start_cursor={start_cursor}"

        result = await _notion_request_async("GET", endpoint)
        blocks.extend(result.get("results", []))

        if not result.get("has_more"):
            break
        start_cursor = result.get("next_cursor")

    return blocks


async def append_blocks_async(parent_id: str, blocks: list[dict]) -> list[dict]:
    """Append blocks to the end of a page, at most MAX_APPEND_BLOCKS per call.

    Returns:
        List of created block objects with IDs.
    """
    created: list[dict] = []
    for start in range(0, len(blocks), MAX_APPEND_BLOCKS):
        result = await _notion_request_async(
            "PATCH",
            f"/blocks/{parent_id}/children",
            json_body={"children": blocks[start:start + MAX_APPEND_BLOCKS]}
        )
        created.extend(result.get("results", []))
    return created


async def delete_block_async(block_id: str) -> dict:
    """Delete (archive) a block."""
    return await _notion_request_async("DELETE", f"/blocks/{block_id}")


# =============================================================================
# Section Codec
# =============================================================================
# A page body is a flat run of blocks. Headings open sections; text-bearing
# blocks add lines to the open section. Writing goes the other way, one
# heading_3 + paragraph pair per section.

HEADING_BLOCK_TYPES = ("heading_1", "heading_2", "heading_3")

# Text-bearing block types and the prefix their line gets
LINE_PREFIXES = {
    "paragraph": "",
    "bulleted_list_item": "• ",
    "numbered_list_item": "",
    "quote": "",
}


def plain_text(rich_text: Optional[list[dict]]) -> str:
    """Concatenate the plain text of a rich_text array, dropping formatting."""
    parts = []
    for run in rich_text or []:
        if "plain_text" in run:
            parts.append(run["plain_text"] or "")
        else:
            parts.append(run.get("text", {}).get("content", ""))
    return "".join(parts)


def _block_text(block: dict) -> str:
    block_type = block.get("type", "")
    return plain_text(block.get(block_type, {}).get("rich_text"))


def block_line(block: dict) -> Optional[str]:
    """Line contributed by a non-heading block, or None for other kinds."""
    block_type = block.get("type")
    if block_type not in LINE_PREFIXES:
        return None
    return LINE_PREFIXES[block_type] + _block_text(block)


def blocks_to_sections(blocks: Iterable[dict]) -> list[Section]:
    """Fold a page's blocks into headed sections.

    Single pass: every heading closes the open section and opens a new one;
    text before the first heading goes into one section with no heading.
    Sections that never received a non-blank line are dropped.
    """
    sections: list[Section] = []
    heading: Optional[str] = None
    lines: Optional[list[str]] = None  # None while no section is open

    def flush():
        if lines:
            sections.append(Section(heading, "\n".join(lines)))

    for block in blocks:
        if block.get("type") in HEADING_BLOCK_TYPES:
            flush()
            heading, lines = _block_text(block), []
            continue

        line = block_line(block)
        if line is None or not line.strip():
            continue
        if lines is None:
            heading, lines = None, []
        lines.append(line)

    flush()
    return sections


def _text_runs(content: str) -> list[dict]:
    """Split text into rich_text runs within Notion's per-run length limit."""
    return [
        {"type": "text", "text": {"content": content[i:i + RICH_TEXT_MAX_LEN]}}
        for i in range(0, len(content), RICH_TEXT_MAX_LEN)
    ]


def heading_block(text: str) -> dict:
    return {
        "object": "block",
        "type": "heading_3",
        "heading_3": {"rich_text": _text_runs(text)},
    }


def paragraph_block(text: str) -> dict:
    return {
        "object": "block",
        "type": "paragraph",
        "paragraph": {"rich_text": _text_runs(text)},
    }


def sections_to_blocks(sections: Iterable[Section]) -> list[dict]:
    """Encode sections as blocks: heading_3 then one paragraph per section.

    Blank sections are skipped and content is trimmed, so padded content
    reads back without its surrounding whitespace. Only the first written
    section may lack a heading; it becomes a bare paragraph.
    """
    sections = list(sections)
    check_section_headings(sections)
    blocks: list[dict] = []
    for section in sections:
        content = (section.content or "").strip()
        if not content:
            continue
        if section.heading:
            blocks.append(heading_block(section.heading))
        blocks.append(paragraph_block(content))
    return blocks


async def replace_page_sections(page_id: str, sections: Iterable[Section]) -> int:
    """Replace a page's whole body with the encoded sections.

    Deletes every existing child block one at a time, then appends the new
    blocks. Not atomic: a failure between the two steps leaves the body
    empty or partly written, and nothing repairs it.

    Returns:
        Number of blocks written.
    """
    new_blocks = sections_to_blocks(sections)
    existing = await list_page_blocks_async(page_id)

    for block in existing:
        await delete_block_async(block["id"])

    if new_blocks:
        await append_blocks_async(page_id, new_blocks)

    logger.info(f"Replaced body of {page_id}: {len(existing)} blocks deleted, {len(new_blocks)} written")
    return len(new_blocks)


# =============================================================================
# Entry Properties
# =============================================================================


def build_entry_properties(draft: EntryDraft) -> dict[str, dict]:
    """Build page properties for a draft.

    The category and tag set are always written, so an edit that omits them
    clears them.
    """
    schema = draft.schema
    props: dict[str, dict] = {
        schema.title_property: {"title": _text_runs(draft.label or "")},
        TAGS_PROPERTY: {"multi_select": [{"name": tag} for tag in draft.tags]},
    }
    if schema.has_category:
        props[CATEGORY_PROPERTY] = {
            "select": {"name": draft.category} if draft.category else None
        }
    return props


def parse_entry_page(page: dict, record_type: RecordType) -> Entry:
    """Read an Entry summary from a Notion page object."""
    schema = record_type.schema
    props = page.get("properties", {})

    title_prop = props.get(schema.title_property, {})
    label = plain_text(title_prop.get("title")).strip() or schema.fallback_label

    category = None
    if schema.has_category:
        select = props.get(CATEGORY_PROPERTY, {}).get("select")
        category = select.get("name") if select else None

    tags = [
        option.get("name", "")
        for option in props.get(TAGS_PROPERTY, {}).get("multi_select") or []
    ]

    return Entry(
        id=page.get("id", ""),
        record_type=record_type,
        label=label,
        url=page.get("url"),
        category=category,
        tags=tags,
        created_at=page.get("created_time"),
    )


def known_tag_values(properties: dict) -> set[str]:
    """Tag names defined on a database schema's Tags multi-select."""
    options = properties.get(TAGS_PROPERTY, {}).get("multi_select", {}).get("options", [])
    return {option["name"] for option in options if option.get("name")}


async def query_data_source_async(
    data_source_id: str,
    sorts: Optional[list] = None,
    limit: int = 20
) -> list[dict]:
    """Query up to `limit` rows of a data source."""
    rows: list[dict] = []
    start_cursor = None

    while len(rows) < limit:
        body: dict = {"page_size": min(100, limit - len(rows))}
        if sorts:
            body["sorts"] = sorts
        if start_cursor:
            body["start_cursor"] = start_cursor

        result = await _notion_request_async(
            "POST",
            f"/data_sources/{data_source_id}/query",
            json_body=body
        )
        rows.extend(result.get("results", []))

        if not result.get("has_more"):
            break
        start_cursor = result.get("next_cursor")

    return rows[:limit]


# =============================================================================
# Caches
# =============================================================================


class TagDictionary:
    """Known tag names per record type, used only for autocomplete.

    Refreshed by re-reading the database schema, since Notion grows a
    multi-select's options whenever a page is saved with a new tag. A failed
    refresh keeps the previous names.
    """

    def __init__(self, loader: Callable[[RecordType], Awaitable[set[str]]]):
        self._loader = loader
        self._tags: dict[RecordType, list[str]] = {}
        self._stale: set[RecordType] = set()

    def get(self, record_type: RecordType) -> Optional[list[str]]:
        tags = self._tags.get(record_type)
        return list(tags) if tags is not None else None

    def is_stale(self, record_type: RecordType) -> bool:
        return record_type not in self._tags or record_type in self._stale

    def mark_stale(self, record_type: RecordType):
        self._stale.add(record_type)

    async def refresh(self, record_type: RecordType) -> list[str]:
        """Reload tag names for a record type. Never raises on store errors."""
        try:
            names = await self._loader(record_type)
        except (httpx.HTTPError, ScribeError) as e:
            logger.warning(f"Tag refresh for {record_type.value} failed, keeping previous tags: {e}")
            return self.get(record_type) or []
        self._tags[record_type] = sorted(names, key=lambda t: (t.casefold(), t))
        self._stale.discard(record_type)
        return list(self._tags[record_type])


# =============================================================================
# Library Operations
# =============================================================================

SEARCH_PAGE_SIZE = 30
RECENT_LIMIT = 20
NEWEST_FIRST = [{"timestamp": "created_time", "direction": "descending"}]


def _newest_first(entries: Iterable[Entry]) -> list[Entry]:
    return sorted(entries, key=lambda e: e.created_at or "", reverse=True)


class ScribeLibrary:
    """Entry operations over the configured Scribe databases.

    Edits to the same entry are not serialized here; concurrent edits race
    and the last request to land wins.
    """

    def __init__(self, database_ids: Optional[dict[RecordType, str]] = None):
        self.database_ids: dict[RecordType, str] = dict(database_ids or {})
        self.tags = TagDictionary(self._load_known_tags)
        self._data_source_ids: dict[RecordType, str] = {}

    def configure(self, database_ids: dict[RecordType, str]):
        self.database_ids = dict(database_ids)
        self._data_source_ids.clear()

    def database_id(self, record_type: RecordType) -> str:
        db_id = self.database_ids.get(record_type)
        if not db_id:
            raise ConfigError(
                f"No database configured for {record_type.value} "
                f"({record_type.schema.env_var})"
            )
        return db_id

    async def data_source_id(self, record_type: RecordType) -> str:
        """Resolve (and remember) the first data source of a record type's database.

        In API 2025-09-03 pages are created under, and queried through, the
        data source rather than the database container.
        """
        if record_type in self._data_source_ids:
            return self._data_source_ids[record_type]
        database = await _notion_request_async("GET", f"/databases/{self.database_id(record_type)}")
        data_sources = database.get("data_sources", [])
        if not data_sources or not data_sources[0].get("id"):
            raise StoreError(f"{record_type.schema.database_title} database has no data sources")
        self._data_source_ids[record_type] = data_sources[0]["id"]
        return self._data_source_ids[record_type]

    def record_type_for_parent(self, parent: dict) -> Optional[RecordType]:
        """Which Scribe database a page's parent points at, if any."""
        database_id = _compact_id(parent.get("database_id"))
        data_source_id = _compact_id(parent.get("data_source_id"))
        for record_type, db_id in self.database_ids.items():
            if database_id and database_id == _compact_id(db_id):
                return record_type
        for record_type, ds_id in self._data_source_ids.items():
            if data_source_id and data_source_id == _compact_id(ds_id):
                return record_type
        return None

    async def _load_known_tags(self, record_type: RecordType) -> set[str]:
        data_source_id = await self.data_source_id(record_type)
        data_source = await _notion_request_async("GET", f"/data_sources/{data_source_id}")
        return known_tag_values(data_source.get("properties", {}))

    async def _after_write(self, record_type: RecordType):
        # A write may have added tags to the schema
        self.tags.mark_stale(record_type)
        await self.tags.refresh(record_type)

    async def create_entry(self, draft: EntryDraft) -> Entry:
        """Create a page for the draft with its body sections as children."""
        draft.validate()
        record_type = draft.record_type
        self.database_id(record_type)
        blocks = sections_to_blocks(draft.sections)

        with _store_call(f"save {record_type.value}"):
            data_source_id = await self.data_source_id(record_type)
            page = await _notion_request_async("POST", "/pages", json_body={
                "parent": {"type": "data_source_id", "data_source_id": data_source_id},
                "properties": build_entry_properties(draft),
                "children": blocks[:MAX_APPEND_BLOCKS],
            })
            if len(blocks) > MAX_APPEND_BLOCKS:
                await append_blocks_async(page["id"], blocks[MAX_APPEND_BLOCKS:])

        logger.info(f"Saved {record_type.value} {page.get('id')}: {draft.label!r}")
        await self._after_write(record_type)
        return parse_entry_page(page, record_type)

    async def read_sections(self, entry_ref: str) -> list[Section]:
        """Decode an entry's page body into sections, always from the store."""
        entry_id = resolve_entry_id(entry_ref)
        with _store_call("read entry"):
            blocks = await list_page_blocks_async(entry_id)
        return blocks_to_sections(blocks)

    async def edit_entry(self, entry_ref: str, draft: EntryDraft) -> int:
        """Replace an entry's properties and whole body.

        Properties and body are two independent writes; if the body write
        fails the properties stay updated.

        Returns:
            Number of body blocks written.
        """
        entry_id = resolve_entry_id(entry_ref)
        draft.validate()

        with _store_call(f"update {draft.record_type.value}"):
            await _notion_request_async("PATCH", f"/pages/{entry_id}", json_body={
                "properties": build_entry_properties(draft),
            })
            written = await replace_page_sections(entry_id, draft.sections)

        await self._after_write(draft.record_type)
        return written

    async def list_recent(self, limit: int = RECENT_LIMIT) -> list[Entry]:
        """Newest entries across all configured databases.

        Fetches up to `limit` entries per record type and merges them newest
        first.
        """
        configured = [rt for rt in RecordType if self.database_ids.get(rt)]
        if not configured:
            raise ConfigError("No Scribe databases configured")

        async def load(record_type: RecordType) -> list[Entry]:
            data_source_id = await self.data_source_id(record_type)
            rows = await query_data_source_async(data_source_id, sorts=NEWEST_FIRST, limit=limit)
            return [parse_entry_page(row, record_type) for row in rows]

        with _store_call("list entries"):
            listings = await asyncio.gather(*(load(rt) for rt in configured))

        return _newest_first(entry for listing in listings for entry in listing)

    async def search(self, query: Optional[str]) -> list[Entry]:
        """Title search across the Scribe databases, newest first."""
        q = normalize_text(query)
        if q is None:
            return []

        with _store_call("search"):
            result = await _notion_request_async("POST", "/search", json_body={
                "query": q,
                "filter": {"value": "page", "property": "object"},
                "page_size": SEARCH_PAGE_SIZE,
            })

        entries = []
        for page in result.get("results", []):
            if page.get("object") != "page":
                continue
            record_type = self.record_type_for_parent(page.get("parent", {}))
            if record_type is not None:
                entries.append(parse_entry_page(page, record_type))
        return _newest_first(entries)

    async def list_tags(self, record_type: RecordType, refresh: bool = False) -> list[str]:
        """Known tags for autocomplete; loads on first use or when stale."""
        self.database_id(record_type)
        if refresh or self.tags.is_stale(record_type):
            return await self.tags.refresh(record_type)
        return self.tags.get(record_type) or []


# =============================================================================
# Database Setup
# =============================================================================


async def create_databases_async(parent_page_id: str) -> dict[RecordType, str]:
    """Create the four Scribe databases under a parent page.

    Only categorical fields become columns; free text lives in page bodies.
    In API 2025-09-03 extra properties are added via a data_source PATCH
    after the database is created.

    Returns:
        Mapping of record type to new database ID.
    """
    created: dict[RecordType, str] = {}
    for record_type, schema in RECORD_SCHEMAS.items():
        database = await _notion_request_async("POST", "/databases", json_body={
            "parent": {"type": "page_id", "page_id": parent_page_id},
            "title": _text_runs(schema.database_title),
            "properties": {schema.title_property: {"title": {}}},
        })

        extra: dict[str, dict] = {TAGS_PROPERTY: {"multi_select": {}}}
        if schema.has_category:
            extra[CATEGORY_PROPERTY] = {
                "select": {"options": [{"name": name} for name in IDEA_CATEGORIES]}
            }
        data_source_id = database["data_sources"][0]["id"]
        await _notion_request_async(
            "PATCH", f"/data_sources/{data_source_id}", json_body={"properties": extra}
        )

        created[record_type] = database["id"]
        logger.info(f"{schema.database_title} database created")
    return created


# =============================================================================
# Rendering
# =============================================================================


def render_sections(sections: list[Section]) -> str:
    """Render sections as plain text for tool output."""
    if not sections:
        return "No details recorded"
    parts = []
    for section in sections:
        if section.heading:
            parts.append(f"### {section.heading}\n{section.content}")
        else:
            parts.append(section.content)
    return "\n\n".join(parts)


def render_entries(entries: list[Entry]) -> str:
    """One line per entry: id, type, label, category and tags."""
    lines = []
    for entry in entries:
        line = f"{entry.id} {entry.record_type.value:<9} {entry.label}"
        if entry.category:
            line += f" ({entry.category})"
        if entry.tags:
            line += f" [{', '.join(entry.tags)}]"
        lines.append(line)
    return "\n".join(lines)


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("scribe", host="127.0.0.1", port=3001)

# Process-wide library, configured in main()
_library = ScribeLibrary()


def _draft_payload(
    record_type: RecordType,
    label: str,
    tags: str,
    category: str,
    fields: Optional[dict],
    sections: Optional[list[dict]] = None,
) -> dict:
    payload: dict[str, Any] = dict(fields or {})
    payload[record_type.schema.label_key] = label
    payload["tags"] = tags
    if category:
        payload["category"] = category
    if sections is not None:
        payload["sections"] = sections
    return payload


@mcp.tool()
async def scribe_save(
    record_type: str,
    label: str,
    tags: str = "",
    category: str = "",
    fields: Optional[dict] = None,
) -> str:
    """Save a new entry to the screenwriter library.

    Args:
        record_type: "idea", "character", "story" or "random".
        label: The title (idea, random), name (character) or "what" (story).
        tags: Comma-separated tags; quote a tag to include a comma.
            Example: noir, heist, "love, lost"
        category: Ideas only - "Script Idea" or "Scene Idea".
        fields: Free-text body fields by record type:
            - idea, random: details
            - character: description, when_encountered, why_interesting
            - story: when, why_interesting

    Returns:
        The new entry's ID and summary, or an error.
    """
    try:
        rt = RecordType.parse(record_type)
        draft = EntryDraft.from_payload(rt, _draft_payload(rt, label, tags, category, fields))
        entry = await _library.create_entry(draft)
    except ScribeError as e:
        return _tool_error(e)
    return f"saved {render_entries([entry])}"


@mcp.tool()
async def scribe_read(ref: str) -> str:
    """Read an entry's body as headed sections.

    Args:
        ref: Page UUID or Notion URL of the entry.
    """
    try:
        sections = await _library.read_sections(ref)
    except ScribeError as e:
        return _tool_error(e, ref=ref)
    return render_sections(sections)


@mcp.tool()
async def scribe_edit(
    ref: str,
    record_type: str,
    label: str,
    tags: str = "",
    category: str = "",
    sections: Optional[list[dict]] = None,
    fields: Optional[dict] = None,
) -> str:
    """Replace an entry's label, category, tags and whole body.

    Anything omitted is cleared: pass the full tag list and full body.

    Args:
        ref: Page UUID or Notion URL of the entry.
        record_type: The entry's type (cannot be changed).
        label: New title/name/"what".
        tags: Comma-separated tags.
        category: Ideas only - "Script Idea" or "Scene Idea".
        sections: Body as [{"heading": ..., "content": ...}]. Takes
            precedence over fields.
        fields: Body as free-text fields (see scribe_save).
    """
    try:
        rt = RecordType.parse(record_type)
        draft = EntryDraft.from_payload(
            rt, _draft_payload(rt, label, tags, category, fields, sections)
        )
        written = await _library.edit_entry(ref, draft)
    except ScribeError as e:
        return _tool_error(e, ref=ref)
    return f"updated {ref} ({len(draft.sections)} sections, {written} blocks)"


@mcp.tool()
async def scribe_recent(limit: int = RECENT_LIMIT) -> str:
    """List the newest entries across all four databases.

    Args:
        limit: Entries per database (default 20, max 100).
    """
    try:
        entries = await _library.list_recent(limit=max(1, min(limit, 100)))
    except ScribeError as e:
        return _tool_error(e)
    if not entries:
        return "No entries yet"
    return render_entries(entries)


@mcp.tool()
async def scribe_search(query: str) -> str:
    """Search entries by title.

    Args:
        query: Text matched against entry titles.
    """
    try:
        entries = await _library.search(query)
    except ScribeError as e:
        return _tool_error(e)
    if not entries:
        return f"No results for '{query}'"
    return f"Found {len(entries)} result(s) for '{query}':\n" + render_entries(entries)


@mcp.tool()
async def scribe_tags(record_type: str, refresh: bool = False) -> str:
    """List tags already used for a record type.

    Args:
        record_type: "ideas", "characters", "stories" or "random".
        refresh: Re-read the tag list from Notion.
    """
    try:
        rt = RecordType.parse(record_type)
        tags = await _library.list_tags(rt, refresh=refresh)
    except ScribeError as e:
        return _tool_error(e)
    return ", ".join(tags) if tags else "No tags yet"


# =============================================================================
# HTTP Endpoints
# =============================================================================


def _json_error(e: ScribeError) -> JSONResponse:
    status = 400 if isinstance(e, EntryValidationError) else 500
    if status == 500:
        logger.error(f"{type(e).__name__}: {e.message}")
    return JSONResponse({"error": e.message}, status_code=status)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise EntryValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise EntryValidationError("Request body must be a JSON object")
    return body


async def create_entry_endpoint(request: Request) -> JSONResponse:
    """POST /api/{idea|character|story|random}"""
    try:
        record_type = RecordType.parse(request.path_params["record_type"])
        draft = EntryDraft.from_payload(
            record_type, await _json_body(request), category_keys=CREATE_CATEGORY_KEYS,
        )
        entry = await _library.create_entry(draft)
    except ScribeError as e:
        return _json_error(e)
    return JSONResponse({"success": True, "id": entry.id})


async def edit_entry_endpoint(request: Request) -> JSONResponse:
    """PATCH /api/entry/{entry_id} - update properties and replace the body."""
    try:
        body = await _json_body(request)
        draft = EntryDraft.from_payload(RecordType.parse(body.get("type")), body)
        await _library.edit_entry(request.path_params["entry_id"], draft)
    except ScribeError as e:
        return _json_error(e)
    return JSONResponse({"success": True})


async def read_entry_endpoint(request: Request) -> JSONResponse:
    """GET /api/entry/{entry_id} - page body as sections."""
    try:
        sections = await _library.read_sections(request.path_params["entry_id"])
    except ScribeError as e:
        return _json_error(e)
    return JSONResponse({"sections": [s.to_dict() for s in sections]})


async def tags_endpoint(request: Request) -> JSONResponse:
    """GET /api/tags?db=ideas|characters|stories|random"""
    try:
        record_type = RecordType.parse(request.query_params.get("db"))
    except EntryValidationError:
        return JSONResponse({"error": "Invalid or missing ?db= param"}, status_code=400)
    try:
        tags = await _library.list_tags(record_type)
    except ScribeError as e:
        return _json_error(e)
    return JSONResponse({"tags": tags})


async def materials_endpoint(request: Request) -> JSONResponse:
    """GET /api/materials - newest entries across all databases."""
    try:
        entries = await _library.list_recent()
    except ScribeError as e:
        return _json_error(e)
    return JSONResponse({"materials": [e.to_dict() for e in entries]})


async def search_endpoint(request: Request) -> JSONResponse:
    """GET /api/search?q=query"""
    try:
        entries = await _library.search(request.query_params.get("q"))
    except ScribeError as e:
        return _json_error(e)
    return JSONResponse({"materials": [e.to_dict() for e in entries]})


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    return JSONResponse({
        "status": "ok",
        "token_loaded": _notion_token is not None,
        "databases": sorted(rt.value for rt in _library.database_ids),
    })


def api_routes() -> list[Route]:
    # Fixed paths come before the /api/{record_type} catch-all
    return [
        Route("/health", health_endpoint, methods=["GET"]),
        Route("/api/tags", tags_endpoint, methods=["GET"]),
        Route("/api/materials", materials_endpoint, methods=["GET"]),
        Route("/api/search", search_endpoint, methods=["GET"]),
        Route("/api/entry/{entry_id}", read_entry_endpoint, methods=["GET"]),
        Route("/api/entry/{entry_id}", edit_entry_endpoint, methods=["PATCH"]),
        Route("/api/{record_type}", create_entry_endpoint, methods=["POST"]),
    ]


# =============================================================================
# Main Entry Point
# =============================================================================


def _read_token(token_file: str) -> str:
    token_path = Path(token_file).expanduser()
    if not token_path.exists():
        logger.error(f"Token file not found: {token_path}")
        raise SystemExit(1)
    token = token_path.read_text().strip()
    if not token:
        logger.error("Token file is empty")
        raise SystemExit(1)
    logger.info(f"Notion token loaded from {token_path}")
    return token


def main():
    """Run the Scribe server.

    Supports two transport modes:
    - stdio (default): MCP client launches this process
    - http: MCP streamable HTTP plus the JSON API on port 3001

    Usage:
        uv run scribe-mcp --token-file ~/.notion_token
        uv run scribe-mcp --token-file ~/.notion_token --http
        uv run scribe-mcp --token-file ~/.notion_token --setup <parent page id>
    """
    import argparse

    parser = argparse.ArgumentParser(description="Scribe screenwriter library server")
    parser.add_argument(
        "--token-file",
        required=True,
        help="Path to file containing Notion API token"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:3001 instead of stdio"
    )
    parser.add_argument(
        "--setup",
        metavar="PARENT_PAGE_ID",
        help="Create the four Scribe databases under this page and print their IDs"
    )
    for record_type, schema in RECORD_SCHEMAS.items():
        parser.add_argument(
            f"--{schema.collection}-db",
            dest=f"{record_type.value}_db",
            default=os.environ.get(schema.env_var),
            help=f"{schema.database_title} database ID (default: ${schema.env_var})"
        )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token
    _notion_token = _read_token(args.token_file)

    if args.setup:
        try:
            parent_id = resolve_entry_id(args.setup)
            created = asyncio.run(create_databases_async(parent_id))
        except (ScribeError, httpx.HTTPError) as e:
            detail = e.message if isinstance(e, ScribeError) else _http_error_detail(e)
            logger.error(f"Setup failed: {detail}")
            raise SystemExit(1)
        for record_type, database_id in created.items():
            print(f"{record_type.schema.env_var}={database_id}")
        return

    _library.configure({
        record_type: getattr(args, f"{record_type.value}_db")
        for record_type in RecordType
        if getattr(args, f"{record_type.value}_db")
    })
    missing = [rt.schema.env_var for rt in RecordType if rt not in _library.database_ids]
    if missing:
        logger.warning(f"Databases not configured: {', '.join(missing)}")

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        for route in api_routes():
            app.add_route(route.path, route.endpoint, methods=list(route.methods))

        logger.info("Starting Scribe on http://127.0.0.1:3001")
        uvicorn.run(app, host="127.0.0.1", port=3001, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
