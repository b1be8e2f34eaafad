"""
Document reconciler: maps saves of Markdown documents to record changes.

Each save of a ``.md`` file under the storage root is parsed and either
updates the record it belongs to or creates a new one. Afterwards the
filename is brought in line with the title, unless the document opts out
(``rename: false``) or the user has named the file by hand.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import DEFAULT_FILENAME_TEMPLATE
from .document import (
    DOCUMENT_SUFFIX,
    ParsedDocument,
    auto_filename_pattern,
    dedupe_markers,
    document_filename,
    document_stem,
    is_document,
    parse_document,
    render_document,
    unique_path,
)
from .errors import PersistenceError, SnipshelfError
from .record_store import RecordStore, in_excluded_dir
from .types import Record, is_inside, resolve_path

logger = logging.getLogger(__name__)


class DocumentState(Enum):
    UNLINKED = "unlinked"
    LINKED = "linked"
    RENAMED = "renamed"


@dataclass
class ReconcileResult:
    """Outcome of reconciling one document."""
    record: Record
    path: Path
    created: bool = False
    changed: bool = False
    state: DocumentState = DocumentState.LINKED
    renamed_from: Optional[Path] = None
    repaired_markers: int = 0
    parse_error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


class Reconciler:
    """Keeps documents and records consistent in both directions."""

    def __init__(self, store: RecordStore, *,
                 filename_template: str = DEFAULT_FILENAME_TEMPLATE,
                 enabled: bool = True):
        self._store = store
        self._enabled = enabled
        self._auto_pattern = auto_filename_pattern(filename_template)

    @property
    def enabled(self) -> bool:
        return self._enabled

    # -------------------------------------------------------------------------
    # Document -> record
    # -------------------------------------------------------------------------

    def reconcile(self, path, text: Optional[str] = None) -> Optional[ReconcileResult]:
        """
        Apply one saved document to the store.

        Args:
            path: Document path
            text: Document text; read from disk when omitted

        Returns:
            The result, or None if the path is ignored (mirror disabled,
            not Markdown, outside the storage root, or below an excluded
            directory such as .git or an import backup)

        Raises:
            DuplicateNameError: the title is used by a different record
            PersistenceError: the document or the store could not be read or written
        """
        if not self._enabled or not is_document(path):
            return None
        if not is_inside(self._store.root, path):
            logger.debug("Ignoring %s, outside the storage root", path)
            return None
        if in_excluded_dir(self._store.root, path):
            logger.debug("Ignoring %s, inside an excluded directory", path)
            return None
        path = resolve_path(path)
        if text is None:
            text = _read(path)

        parsed = parse_document(text, path=path)
        warnings: list[str] = []
        repaired = 0
        if len(parsed.marker_ids) > 1:
            try:
                repaired = self._dedupe_on_disk(path, text)
            except OSError as e:
                warnings.append(f"could not repair identity markers in {path}: {e}")

        with self._store.lock:
            existing = self._resolve(parsed, path)
            if existing is not None:
                record, changed = self._apply(existing, parsed, path)
                created = False
            else:
                record = self._create(parsed, path)
                changed = created = True

            result = ReconcileResult(
                record=record,
                path=path,
                created=created,
                changed=changed,
                repaired_markers=repaired,
                parse_error=str(parsed.parse_error) if parsed.parse_error else None,
                warnings=warnings,
            )
            try:
                new_path = self.sync_filename(record, rename=parsed.rename, previous=existing)
            except OSError as e:
                result.warnings.append(f"could not rename {path.name}: {e}")
                new_path = None
            if new_path is not None:
                result.renamed_from = path
                result.path = new_path
                result.state = DocumentState.RENAMED
                result.record = self._store.get_by_id(record.id) or record

        for w in result.warnings:
            logger.warning(w)
        if created:
            logger.info("Created %s (%s) from %s", record.id, record.name, path.name)
        return result

    def on_save(self, path, text: Optional[str] = None) -> Optional[ReconcileResult]:
        """Save hook. Errors are logged, never raised, so one bad document
        does not stop reconciliation of others."""
        try:
            return self.reconcile(path, text)
        except SnipshelfError as e:
            logger.warning("Reconcile of %s failed: %s", path, e)
            return None

    def _resolve(self, parsed: ParsedDocument, path: Path) -> Optional[Record]:
        """Front matter id, then first marker, then the path link.

        A declared id whose record lives in a different existing document
        does not count (the file is a copy).
        """
        key = str(path)
        candidates = [parsed.id] + parsed.marker_ids[:1]
        for declared in candidates:
            if not declared:
                continue
            owner = self._store.get_by_id(declared)
            if owner is None:
                continue
            linked = owner.source_document
            if linked in (None, key) or not Path(linked).exists():
                return owner
        return self._store.find_by_document(path)

    def _apply(self, existing: Record, parsed: ParsedDocument, path: Path) -> tuple[Record, bool]:
        updated = existing.copy()
        updated.name = parsed.title_for(path)
        updated.icon = parsed.icon
        updated.content = parsed.content
        if parsed.tags is not None:
            updated.tags = list(parsed.tags)
        updated.source_document = str(path)
        if _same_fields(existing, updated):
            return existing, False
        return self._store.update(updated), True

    def _create(self, parsed: ParsedDocument, path: Path) -> Record:
        declared = next((i for i in [parsed.id] + parsed.marker_ids[:1] if i), None)
        record_id = declared if declared and self._store.get_by_id(declared) is None else None
        record = Record.new(
            self._store.unique_name(parsed.title_for(path)),
            parsed.content,
            icon=parsed.icon,
            tags=parsed.tags,
            source_document=str(path),
            id=record_id,
        )
        return self._store.add(record)

    # -------------------------------------------------------------------------
    # Filenames
    # -------------------------------------------------------------------------

    def sync_filename(self, record: Record, *, rename: Optional[bool] = None,
                      previous: Optional[Record] = None) -> Optional[Path]:
        """
        Rename the record's document to match its title.

        ``rename=False`` always skips; ``rename=True`` always renames.
        Otherwise the file is renamed only while its name is still
        auto-generated: the filename template shape, or the name derived
        from the record's previous title. A hand-picked filename stays.

        Returns:
            The new path, or None if nothing was renamed
        """
        if rename is False or not record.source_document:
            return None
        current = Path(record.source_document)
        if not current.exists():
            return None
        desired = document_stem(record.name, record.icon)
        if current.stem == desired:
            return None
        if rename is not True and not self._is_generated_name(current.stem, previous):
            return None
        target = unique_path(current.with_name(desired + DOCUMENT_SUFFIX), ignore=current)
        if target == current:
            return None
        current.rename(target)
        self._store.relink(record.id, target)
        logger.info("Renamed %s -> %s", current.name, target.name)
        return target

    def _is_generated_name(self, stem: str, previous: Optional[Record]) -> bool:
        if self._auto_pattern.match(stem):
            return True
        if previous is None:
            return False
        earlier = re.escape(document_stem(previous.name, previous.icon))
        return re.match(f"^{earlier}(-\\d+)?$", stem) is not None

    # -------------------------------------------------------------------------
    # Record -> document
    # -------------------------------------------------------------------------

    def write_document(self, record: Record, *, previous: Optional[Record] = None) -> Path:
        """
        Render a record into its linked document, or into a new one.

        Front matter keys the shelf does not manage are kept, as is the
        document's ``rename`` setting. The filename is then synced.

        Returns:
            The document path after any rename
        """
        with self._store.lock:
            rename = None
            extra = None
            if record.source_document and Path(record.source_document).exists():
                path = Path(record.source_document)
                current = parse_document(_read(path), path=path)
                rename, extra = current.rename, current.metadata
            elif record.source_document:
                path = Path(record.source_document)
            else:
                path = unique_path(self._store.root / document_filename(record.name, record.icon))

            try:
                path.write_text(render_document(record, rename=rename, extra=extra), encoding="utf-8")
            except OSError as e:
                raise PersistenceError(f"cannot write document: {e}", path) from e
            path = resolve_path(path)
            if record.source_document != str(path):
                record = self._store.relink(record.id, path)
            logger.debug("Wrote %s for %s", path.name, record.id)

            try:
                new_path = self.sync_filename(record, rename=rename, previous=previous)
            except OSError as e:
                logger.warning("Could not rename %s: %s", path.name, e)
                new_path = None
            return new_path or path

    # -------------------------------------------------------------------------
    # Marker repair and state
    # -------------------------------------------------------------------------

    def repair_markers(self, path) -> int:
        """Strip duplicate identity markers from one document. Returns the count removed."""
        path = Path(path)
        try:
            return self._dedupe_on_disk(path, _read(path))
        except OSError as e:
            raise PersistenceError(f"cannot rewrite document: {e}", path) from e

    def repair_all(self) -> dict[Path, int]:
        """Repair every document under the storage root. Returns repaired paths."""
        repaired = {}
        for path in self._store.iter_documents():
            removed = self.repair_markers(path)
            if removed:
                repaired[path] = removed
        return repaired

    def state(self, path) -> DocumentState:
        if self._store.find_by_document(path) is not None:
            return DocumentState.LINKED
        return DocumentState.UNLINKED

    def _dedupe_on_disk(self, path: Path, text: str) -> int:
        fixed, removed = dedupe_markers(text)
        if removed:
            path.write_text(fixed, encoding="utf-8")
            logger.info("Removed %d duplicate identity marker(s) from %s", removed, path.name)
        return removed


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PersistenceError(f"cannot read document: {e}", path) from e


def _same_fields(a: Record, b: Record) -> bool:
    return (a.name, a.icon, a.content, a.tags, a.source_document) == \
        (b.name, b.icon, b.content, b.tags, b.source_document)
