"""
Record store backed by a JSON file in the storage root.

The store is the source of truth for:
- Record identity (id) and unique names
- Content, icon and tags
- Timestamps
- The link from a record to its Markdown document

Markdown documents in the storage root are discovered and imported on load,
and records whose document has disappeared are pruned. Every change is
written atomically (temp file + rename) and followed by exactly one
change notification to subscribers.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterator, Optional

from .document import is_document, parse_document
from .errors import (
    DuplicateIdError,
    DuplicateNameError,
    InvalidRecordError,
    NotFoundError,
    PathEscapeError,
    PersistenceError,
)
from .types import Record, generate_id, is_inside, normalize_tags, resolve_path

logger = logging.getLogger(__name__)


STORE_FILENAME = "snippets.json"
STORE_FORMAT_VERSION = "1.0.0"

EXCLUDED_DIRS = frozenset({
    ".git", ".hg", ".svn", ".vscode", ".idea", ".obsidian", "node_modules",
})
BACKUP_DIR_PREFIX = ".snipshelf-backup-"

MAX_NAME_SUFFIX = 50


def unique_name(name: str, taken: set[str]) -> str:
    """Return name, or the first of name-1 ... name-50 not in taken."""
    if name not in taken:
        return name
    for i in range(1, MAX_NAME_SUFFIX + 1):
        candidate = f"{name}-{i}"
        if candidate not in taken:
            return candidate
    raise DuplicateNameError(name, "add")


def is_excluded_dir(name: str) -> bool:
    return name in EXCLUDED_DIRS or name.startswith(BACKUP_DIR_PREFIX)


def in_excluded_dir(root, path) -> bool:
    """True when path sits below an excluded directory of root."""
    try:
        parts = resolve_path(path).relative_to(resolve_path(root)).parts[:-1]
    except ValueError:
        return False
    return any(is_excluded_dir(part) for part in parts)


class RecordStore:
    """
    Authoritative record list for one storage root.

    All reads return copies. A single reentrant lock serializes every
    read-modify-write of the in-memory list and its persisted copy; callers
    that need a consistent read-then-write across several calls may hold
    ``store.lock`` themselves.
    """

    def __init__(self, root: Path, *, auto_create: bool = True, mirror: bool = True):
        """
        Args:
            root: Storage root directory
            auto_create: Create the root if it does not exist
            mirror: Discover and import Markdown documents in the root
        """
        self._root = resolve_path(root)
        self._auto_create = auto_create
        self._mirror = mirror
        self._records: list[Record] = []
        self._subscribers: list[Callable[[], None]] = []
        self._warnings: list[str] = []
        self.lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def store_path(self) -> Path:
        return self._root / STORE_FILENAME

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Load the store, import loose documents and prune orphans.

        Persists when anything changed or the store file did not exist yet.
        """
        with self.lock:
            saved = self._bind()
        if saved:
            self._notify()

    def update_storage_path(self, path) -> None:
        """Re-point the store at another directory and reload it.

        Subscribers are notified exactly once.
        """
        with self.lock:
            self._root = resolve_path(path)
            self._records = []
            self._bind()
            logger.info("Storage root is now %s", self._root)
        self._notify()

    def refresh(self) -> None:
        """Reload from disk, rediscover, re-prune; persist if changed.

        Subscribers are notified exactly once.
        """
        with self.lock:
            records, changed = self._load()
            changed = self._sweep(records) or changed
            if changed:
                self._persist(records)
            self._records = records
        self._notify()

    def _bind(self) -> bool:
        """Load, discover and prune for the current root. Returns True if saved."""
        if not self._root.exists():
            if not self._auto_create:
                raise PersistenceError("storage root does not exist", self._root)
            self._root.mkdir(parents=True, exist_ok=True)
            logger.info("Created storage root %s", self._root)
        existed = self.store_path.exists()
        records, changed = self._load()
        changed = self._sweep(records) or changed
        if changed or not existed:
            self._persist(records)
        self._records = records
        return changed or not existed

    def _sweep(self, records: list[Record]) -> bool:
        imported = self._discover(records) if self._mirror else 0
        pruned = self._prune(records)
        if imported or pruned:
            logger.info("Imported %d document(s), pruned %d orphan(s)", imported, pruned)
        return bool(imported or pruned)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def list(self) -> list[Record]:
        """All records, as copies."""
        with self.lock:
            return [r.copy() for r in self._records]

    def get_by_id(self, id: str) -> Optional[Record]:
        with self.lock:
            record = self._find(id)
            return record.copy() if record else None

    def get_by_name(self, name: str) -> Optional[Record]:
        with self.lock:
            for r in self._records:
                if r.name == name:
                    return r.copy()
        return None

    def find_by_document(self, path) -> Optional[Record]:
        """Record linked to exactly this document path."""
        key = str(resolve_path(path))
        with self.lock:
            for r in self._records:
                if r.source_document == key:
                    return r.copy()
        return None

    def search(self, keyword: str) -> list[Record]:
        """Records whose name, content or a tag contains keyword (case-insensitive)."""
        needle = keyword.lower()
        with self.lock:
            return [
                r.copy() for r in self._records
                if needle in r.name.lower()
                or needle in r.content.lower()
                or any(needle in t.lower() for t in r.tags)
            ]

    def unique_name(self, name: str, *, exclude_id: Optional[str] = None) -> str:
        """Name made unique against every record except ``exclude_id``."""
        with self.lock:
            taken = {r.name for r in self._records if r.id != exclude_id}
        return unique_name(name, taken)

    def pop_warnings(self) -> list[str]:
        """Return and clear warnings from best-effort side actions."""
        with self.lock:
            warnings, self._warnings = self._warnings, []
        return warnings

    def __len__(self) -> int:
        with self.lock:
            return len(self._records)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add(self, record: Record) -> Record:
        """
        Append a new record and persist.

        Raises:
            InvalidRecordError: empty name
            DuplicateNameError: another record has this name
            DuplicateIdError: another record has this id
            PathEscapeError: source_document is outside the storage root
        """
        stored = self._validated(record, "add")
        with self.lock:
            for r in self._records:
                if r.name == stored.name:
                    raise DuplicateNameError(stored.name, "add")
                if r.id == stored.id:
                    raise DuplicateIdError(stored.id, "add")
            records = self._records + [stored]
            self._persist(records)
            self._records = records
        logger.info("Added %s (%s)", stored.id, stored.name)
        self._notify()
        return stored.copy()

    def update(self, record: Record) -> Record:
        """
        Replace an existing record, stamp updated_at and persist.

        created_at is kept from the stored record.

        Raises:
            NotFoundError: unknown id
            DuplicateNameError: a different record already has the name
            PathEscapeError: source_document is outside the storage root
        """
        stored = self._validated(record, "update")
        with self.lock:
            index = self._index(stored.id)
            if index is None:
                raise NotFoundError(stored.id, "update")
            for r in self._records:
                if r.name == stored.name and r.id != stored.id:
                    raise DuplicateNameError(stored.name, "update")
            stored.created_at = self._records[index].created_at
            stored.touch()
            records = list(self._records)
            records[index] = stored
            self._persist(records)
            self._records = records
        logger.info("Updated %s (%s)", stored.id, stored.name)
        self._notify()
        return stored.copy()

    def remove(self, id: str) -> Optional[Record]:
        """
        Remove a record, persist, then delete its linked document.

        The document delete is best-effort: a failure (or a link that
        escapes the storage root) is logged and queued as a warning
        without rolling back the removal.

        Returns:
            The removed record, or None if the id was unknown
        """
        with self.lock:
            index = self._index(id)
            if index is None:
                return None
            removed = self._records[index]
            records = self._records[:index] + self._records[index + 1:]
            self._persist(records)
            self._records = records
            if removed.source_document:
                self._delete_document(removed)
        logger.info("Removed %s (%s)", removed.id, removed.name)
        self._notify()
        return removed.copy()

    def relink(self, id: str, path) -> Record:
        """
        Point a record at a different document (or None) and persist.

        Does not stamp updated_at or check names, so a rename performed in
        response to a save is not itself seen as an edit.
        """
        with self.lock:
            record = self._find(id)
            if record is None:
                raise NotFoundError(id, "relink")
            new_path = None
            if path is not None:
                if not is_inside(self._root, path):
                    raise PathEscapeError(path, self._root, "relink")
                new_path = str(resolve_path(path))
            records = [r.copy() for r in self._records]
            target = next(r for r in records if r.id == id)
            target.source_document = new_path
            self._persist(records)
            self._records = records
        logger.debug("Relinked %s -> %s", id, new_path)
        self._notify()
        return target.copy()

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a no-argument change callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception:
                logger.exception("Change subscriber %r failed", callback)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _find(self, id: str) -> Optional[Record]:
        for r in self._records:
            if r.id == id:
                return r
        return None

    def _index(self, id: str) -> Optional[int]:
        for i, r in enumerate(self._records):
            if r.id == id:
                return i
        return None

    def _validated(self, record: Record, operation: str) -> Record:
        stored = record.copy()
        stored.name = stored.name.strip()
        if not stored.name:
            raise InvalidRecordError(f"{operation}: record {stored.id!r} has an empty name")
        stored.tags = normalize_tags(stored.tags)
        if stored.source_document:
            if not is_inside(self._root, stored.source_document):
                raise PathEscapeError(stored.source_document, self._root, operation)
            stored.source_document = str(resolve_path(stored.source_document))
        return stored

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._warnings.append(message)

    def _delete_document(self, record: Record) -> None:
        path = record.source_document
        if not is_inside(self._root, path):
            self._warn(f"remove: refusing to delete {path}, outside the storage root")
            return
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            self._warn(f"remove: could not delete {path}: {e}")

    def _load(self) -> tuple[list[Record], bool]:
        """Read the store file. Returns (records, changed-while-loading)."""
        path = self.store_path
        if not path.exists():
            return [], False
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PersistenceError(f"corrupt store file: {e}", path) from e
        except OSError as e:
            raise PersistenceError(f"cannot read store file: {e}", path) from e
        if not isinstance(data, dict):
            raise PersistenceError("store file is not a JSON object", path)

        # Older files kept the list under "prompts"
        entries = data.get("records", data.get("prompts", []))
        if not isinstance(entries, list):
            raise PersistenceError("store file 'records' is not a list", path)

        records: list[Record] = []
        seen_ids: set[str] = set()
        seen_names: set[str] = set()
        changed = False
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                self._warn(f"load: skipping malformed entry in {path}")
                changed = True
                continue
            record = Record.from_dict(entry)
            if record.id in seen_ids:
                self._warn(f"load: skipping duplicate id {record.id}")
                changed = True
                continue
            seen_ids.add(record.id)
            name = (record.name or "").strip()
            if not name:
                self._warn(f"load: skipping {record.id}, it has no name")
                changed = True
                continue
            try:
                record.name = unique_name(name, seen_names)
            except DuplicateNameError:
                self._warn(f"load: skipping {record.id}, name {name!r} is taken")
                changed = True
                continue
            if record.name != name:
                self._warn(f"load: renamed {record.id} to {record.name!r}, name {name!r} is taken")
                changed = True
            elif record.name != entry.get("name"):
                changed = True
            seen_names.add(record.name)
            if record.source_document and not is_inside(self._root, record.source_document):
                self._warn(
                    f"load: detached {record.id}, document {record.source_document} "
                    f"is outside the storage root"
                )
                record.source_document = None
                changed = True
            records.append(record)
        return records, changed

    def iter_documents(self) -> Iterator[Path]:
        """Markdown documents under the root, skipping excluded directories."""
        for dirpath, dirnames, filenames in os.walk(self._root):
            dirnames[:] = sorted(d for d in dirnames if not is_excluded_dir(d))
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if is_document(path) and is_inside(self._root, path):
                    yield resolve_path(path)

    def _discover(self, records: list[Record]) -> int:
        """Import documents not yet linked to a record. Returns the count."""
        linked = {r.source_document for r in records if r.source_document}
        by_id = {r.id: r for r in records}
        names = {r.name for r in records}
        imported = 0
        for path in self.iter_documents():
            key = str(path)
            if key in linked:
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                self._warn(f"discover: cannot read {path}: {e}")
                continue
            parsed = parse_document(text, path=path)

            declared = parsed.identity
            owner = by_id.get(declared) if declared else None
            if owner is not None and not _has_live_document(owner):
                # Record whose document moved or was never written here
                owner.source_document = key
                linked.add(key)
                imported += 1
                continue

            try:
                name = unique_name(parsed.title_for(path), names)
            except DuplicateNameError as e:
                self._warn(f"discover: skipping {path}: {e}")
                continue
            record_id = declared if declared and declared not in by_id else generate_id()
            record = Record.new(
                name,
                parsed.content,
                icon=parsed.icon,
                tags=parsed.tags,
                source_document=key,
                id=record_id,
            )
            records.append(record)
            by_id[record.id] = record
            names.add(name)
            linked.add(key)
            imported += 1
            logger.debug("Discovered %s as %s (%s)", path, record.id, name)
        return imported

    def _prune(self, records: list[Record]) -> int:
        """Drop records whose linked document no longer exists."""
        keep = [r for r in records if not r.source_document or Path(r.source_document).exists()]
        pruned = len(records) - len(keep)
        if pruned:
            records[:] = keep
        return pruned

    def _persist(self, records: list[Record]) -> None:
        """Write records atomically: temp file in the root, fsync, rename."""
        payload = {
            "version": STORE_FORMAT_VERSION,
            "records": [r.to_dict() for r in records],
        }
        text = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        target = self.store_path
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".snippets-", suffix=".tmp", dir=self._root)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except OSError as e:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise PersistenceError(f"write failed: {e}", target) from e


def _has_live_document(record: Record) -> bool:
    return bool(record.source_document) and Path(record.source_document).exists()
