"""
Markdown document format for snippets.

A document is an optional ``---``-delimited YAML front matter block,
an optional heading line (the title) and a body::

    ---
    id: 1718000000000-k3j9x0a
    type: snippet
    emoji: 🚀
    tags: [deploy, shell]
    rename: false
    ---

    # 🚀 Deploy checklist

    Body text...

Older documents carry their identity as an HTML comment marker in the body
(``<!-- snipshelf:id=... -->``). A past bug appended one marker per save, so
only the first marker is authoritative and later ones are stripped.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from .config import DEFAULT_FILENAME_TEMPLATE, parse_bool
from .errors import ParseFailure
from .types import Record, normalize_tags

logger = logging.getLogger(__name__)


DOCUMENT_SUFFIX = ".md"
DOCUMENT_TYPE = "snippet"
MANAGED_KEYS = frozenset({"id", "name", "emoji", "tags", "type", "rename"})

# Title written into freshly created documents; never used as a record name
PLACEHOLDER_TITLE = "Enter a title here"
PLACEHOLDER_BODY = "Write the snippet here..."

MARKER_PATTERN = re.compile(r"<!--\s*snipshelf:id=([\w-]+)\s*-->", re.IGNORECASE)

# Legacy heading form "# prompt: Title" is checked before the plain heading
_PROMPT_HEADING = re.compile(r"^#\s*prompt\s*:\s*(.+?)\s*$", re.IGNORECASE)
_HEADING = re.compile(r"^#{1,6}\s+(.+?)\s*$")

# One leading glyph from the common emoji/symbol ranges
_LEADING_EMOJI = re.compile(r"^([\u231A-\u27BF\U0001F300-\U0001FAFF])\ufe0f?\s*(.+)$")

_ILLEGAL_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')
MAX_FILENAME_LENGTH = 100


@dataclass
class ParsedDocument:
    """Result of parsing one document's text."""
    content: str
    id: Optional[str] = None
    name: Optional[str] = None
    icon: Optional[str] = None
    tags: Optional[list[str]] = None
    type: Optional[str] = None
    rename: Optional[bool] = None
    marker_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    parse_error: Optional[ParseFailure] = None

    @property
    def identity(self) -> Optional[str]:
        """Declared identity: front matter id, else the first legacy marker."""
        if self.id:
            return self.id
        return self.marker_ids[0] if self.marker_ids else None

    @property
    def has_placeholder_title(self) -> bool:
        return not self.name or self.name.strip() == PLACEHOLDER_TITLE

    def title_for(self, path) -> str:
        """Record name for this document, falling back to the filename stem."""
        if self.has_placeholder_title:
            return Path(path).stem
        return self.name.strip()


# ---------------------------------------------------------------------------
# Front matter
# ---------------------------------------------------------------------------

def split_frontmatter(text: str) -> tuple[Optional[str], str]:
    """
    Split text into (front matter, body).

    Front matter must open on the first line with ``---`` and close with a
    later ``---`` line. Otherwise there is none and the whole text is body.
    """
    lines = re.split(r"\r?\n", text)
    if not lines or lines[0].strip() != "---":
        return None, text
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            return "\n".join(lines[1:i]), "\n".join(lines[i + 1:])
    return None, text


def _load_metadata(raw: str, path=None) -> dict[str, Any]:
    """Parse front matter YAML into a dict, raising ParseFailure if malformed."""
    if not raw.strip():
        return {}
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ParseFailure(f"invalid front matter: {e}", path) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseFailure("front matter is not a key/value mapping", path)
    return data


def _scalar(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Identity markers
# ---------------------------------------------------------------------------

def find_markers(text: str) -> list[str]:
    """All legacy identity marker ids, in document order."""
    return [m.group(1) for m in MARKER_PATTERN.finditer(text)]


def _rewrite_markers(text: str, keep_first: bool) -> tuple[str, int]:
    """Drop marker occurrences (all, or all but the first).

    Lines left blank by a removed marker are dropped entirely.
    """
    out: list[str] = []
    removed = 0
    kept = False
    for line in text.splitlines(keepends=True):
        if not MARKER_PATTERN.search(line):
            out.append(line)
            continue

        def _replace(m):
            nonlocal kept, removed
            if keep_first and not kept:
                kept = True
                return m.group(0)
            removed += 1
            return ""

        new_line = MARKER_PATTERN.sub(_replace, line)
        if new_line != line and not new_line.strip():
            continue
        out.append(new_line)
    return "".join(out), removed


def dedupe_markers(text: str) -> tuple[str, int]:
    """Keep only the first identity marker. Returns (text, removed count)."""
    return _rewrite_markers(text, keep_first=True)


def strip_markers(text: str) -> str:
    """Remove every identity marker."""
    return _rewrite_markers(text, keep_first=False)[0]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def split_icon(title: str) -> tuple[Optional[str], str]:
    """Split a leading emoji off a title: '🚀 Deploy' -> ('🚀', 'Deploy')."""
    m = _LEADING_EMOJI.match(title)
    if m:
        return m.group(1), m.group(2).strip()
    return None, title


def _take_heading(body: str) -> tuple[Optional[str], str]:
    """Pop the title heading if the first non-blank line is one."""
    lines = body.split("\n")
    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start == len(lines):
        return None, ""
    first = lines[start].strip()
    m = _PROMPT_HEADING.match(first) or _HEADING.match(first)
    if not m:
        return None, "\n".join(lines[start:])
    return m.group(1).strip(), "\n".join(lines[start + 1:])


def parse_document(text: str, *, path=None) -> ParsedDocument:
    """
    Parse a document's text.

    Malformed front matter does not raise: the failure is logged and
    attached as ``parse_error`` and the whole text is treated as body.
    """
    text = text.lstrip("\ufeff")
    raw_meta, body = split_frontmatter(text)

    metadata: dict[str, Any] = {}
    parse_error: Optional[ParseFailure] = None
    if raw_meta is not None:
        try:
            metadata = _load_metadata(raw_meta, path)
        except ParseFailure as e:
            logger.warning("%s; treating whole text as body", e)
            parse_error = e
            body = text

    marker_ids = find_markers(text)
    heading, rest = _take_heading(strip_markers(body))

    icon = _scalar(metadata.get("emoji"))
    name = _scalar(metadata.get("name"))
    if heading is not None:
        heading_icon, heading_name = split_icon(heading)
        if icon and heading.startswith(icon):
            heading_name = heading[len(icon):].lstrip("\ufe0f").strip() or heading
        elif heading_icon and not icon and heading != name:
            icon = heading_icon
        if name is None:
            name = heading_name
    elif name is not None and icon is None:
        icon, name = split_icon(name)

    tags = None
    if "tags" in metadata and metadata["tags"] is not None:
        raw_tags = metadata["tags"]
        if isinstance(raw_tags, str):
            raw_tags = raw_tags.strip()
            if raw_tags.startswith("[") and raw_tags.endswith("]"):
                raw_tags = raw_tags[1:-1]
        tags = normalize_tags(raw_tags)

    rename = None
    if "rename" in metadata:
        rename = parse_bool(metadata["rename"])

    return ParsedDocument(
        content=rest.strip(),
        id=_scalar(metadata.get("id")),
        name=name,
        icon=icon,
        tags=tags,
        type=_scalar(metadata.get("type")),
        rename=rename,
        marker_ids=marker_ids,
        metadata=metadata,
        parse_error=parse_error,
    )


def is_document(path) -> bool:
    return Path(path).suffix.lower() == DOCUMENT_SUFFIX


# ---------------------------------------------------------------------------
# Rendering and filenames
# ---------------------------------------------------------------------------

def render_document(record: Record, *, rename: Optional[bool] = None,
                    extra: Optional[dict[str, Any]] = None) -> str:
    """
    Render a record as a Markdown document with front matter.

    ``extra`` carries front matter keys the shelf does not manage, so that
    rewriting a document keeps whatever else the user put there.
    """
    meta: dict[str, Any] = {"id": record.id}
    # A name that itself starts with a glyph would read back as icon + name
    if not record.icon and split_icon(record.name)[0]:
        meta["name"] = record.name
    meta["type"] = DOCUMENT_TYPE
    if record.icon:
        meta["emoji"] = record.icon
    if record.tags:
        meta["tags"] = list(record.tags)
    if rename is not None:
        meta["rename"] = rename
    for key, value in (extra or {}).items():
        if key not in MANAGED_KEYS:
            meta[key] = value
    front = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True, default_flow_style=None)
    title = f"# {record.icon} {record.name}" if record.icon else f"# {record.name}"
    parts = ["---", front.rstrip("\n"), "---", "", title, ""]
    if record.content:
        parts.append(record.content)
        parts.append("")
    return "\n".join(parts)


def new_document_text() -> str:
    """Template text for a freshly created document."""
    return f"# {PLACEHOLDER_TITLE}\n\n{PLACEHOLDER_BODY}\n"


def sanitize_filename(name: str) -> str:
    """Replace characters illegal in filenames, collapse whitespace, cap length."""
    cleaned = _ILLEGAL_FILENAME_CHARS.sub("-", name)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = cleaned.lstrip(".")
    return cleaned[:MAX_FILENAME_LENGTH].strip()


def document_stem(name: str, icon: Optional[str] = None) -> str:
    base = sanitize_filename(name) or "untitled"
    if icon:
        icon_part = sanitize_filename(icon)
        if icon_part:
            return f"{icon_part}-{base}"
    return base


def document_filename(name: str, icon: Optional[str] = None) -> str:
    """Filename derived from a record's icon and name: '🚀-Deploy checklist.md'."""
    return document_stem(name, icon) + DOCUMENT_SUFFIX


def _expand_template(template: str, now: datetime) -> str:
    date = now.strftime("%Y%m%d")
    timestamp = now.strftime("%Y%m%d-%H%M%S")
    return template.replace("{timestamp}", timestamp).replace("{date}", date)


def new_document_filename(template: str = DEFAULT_FILENAME_TEMPLATE,
                          now: Optional[datetime] = None) -> str:
    """Expand ``{timestamp}`` / ``{date}`` in the filename template."""
    name = _expand_template(template, now or datetime.now())
    if not name.lower().endswith(DOCUMENT_SUFFIX):
        name += DOCUMENT_SUFFIX
    return sanitize_filename(name)


def auto_filename_pattern(template: str = DEFAULT_FILENAME_TEMPLATE) -> re.Pattern:
    """Regex matching stems the filename template generates (with -N suffix)."""
    stem = template[:-len(DOCUMENT_SUFFIX)] if template.lower().endswith(DOCUMENT_SUFFIX) else template
    pieces = re.split(r"(\{timestamp\}|\{date\})", stem)
    out = []
    for piece in pieces:
        if piece == "{timestamp}":
            out.append(r"\d{8}-\d{6}")
        elif piece == "{date}":
            out.append(r"\d{8}")
        else:
            out.append(re.escape(piece))
    return re.compile("^" + "".join(out) + r"(-\d+)?$")


def unique_path(target: Path, *, ignore: Optional[Path] = None) -> Path:
    """First of target, target-1, target-2, ... that does not exist.

    ``ignore`` is a path treated as free (the file being renamed).
    """
    candidate = target
    i = 1
    while candidate.exists() and candidate != ignore:
        candidate = target.with_name(f"{target.stem}-{i}{target.suffix}")
        i += 1
    return candidate
