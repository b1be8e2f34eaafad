"""
Core API for the snippet shelf.

``Shelf`` wires the pieces together:
- RecordStore: authoritative records in the storage root
- Reconciler: document saves -> record changes, filename sync
- GitSync + AutoSyncScheduler: remote sync through git
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

from .config import ShelfConfig, load_or_create_config, resolve_storage_path, save_config
from .document import new_document_filename, new_document_text, unique_path
from .errors import NotFoundError, PersistenceError, SnipshelfError
from .git_sync import (
    AutoSyncScheduler,
    GitRunner,
    GitSync,
    ImportResult,
    RemoteDecision,
    SyncAction,
    SyncReport,
)
from .logging_config import configure_ops_log, remove_ops_log
from .reconciler import Reconciler, ReconcileResult
from .record_store import RecordStore
from .types import Record, resolve_path

logger = logging.getLogger(__name__)


class Shelf:
    """
    A snippet shelf bound to one storage root.

    Args:
        config: Loaded configuration; read (or created) from the config
            directory when omitted
        storage_path: Storage root overriding the configured one
        runner: git process runner (tests inject a fake)
        ops_log: Attach the rotating operations log in the config directory
    """

    def __init__(self, config: Optional[ShelfConfig] = None, *,
                 storage_path: Optional[Path] = None,
                 runner: Optional[GitRunner] = None,
                 ops_log: bool = True):
        self._config = config if config is not None else load_or_create_config()
        root = resolve_path(storage_path) if storage_path else self._config.resolved_storage_path()

        self._ops_log_handler = configure_ops_log(self._config.config_dir) if ops_log else None

        self._store = RecordStore(
            root,
            auto_create=self._config.auto_create,
            mirror=self._config.markdown.enable_mirror,
        )
        self._store.initialize()
        self._reconciler = Reconciler(
            self._store,
            filename_template=self._config.markdown.filename_template,
            enabled=self._config.markdown.enable_mirror,
        )
        self._git = GitSync(root, self._config.git, runner=runner)
        self._scheduler = AutoSyncScheduler(
            self._auto_sync,
            root,
            self._config.git.effective_delay,
            enabled=self._config.git.enable_sync and self._config.git.auto_sync_on_save,
            on_result=self._on_sync_result,
        )
        self.last_sync: Optional[SyncReport] = None

        for warning in self._store.pop_warnings():
            logger.info("Startup: %s", warning)

    @property
    def config(self) -> ShelfConfig:
        return self._config

    @property
    def root(self) -> Path:
        return self._store.root

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def git(self) -> GitSync:
        return self._git

    @property
    def scheduler(self) -> AutoSyncScheduler:
        return self._scheduler

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def document_saved(self, path, text: Optional[str] = None, *,
                       raise_errors: bool = False) -> Optional[ReconcileResult]:
        """Save hook: reconcile the document, then schedule an auto-sync.

        Failures are logged and return None, unless ``raise_errors`` is set,
        in which case the SnipshelfError propagates and nothing is scheduled.
        """
        if raise_errors:
            try:
                result = self._reconciler.reconcile(path, text)
            except SnipshelfError as e:
                logger.warning("Reconcile of %s failed: %s", path, e)
                raise
        else:
            result = self._reconciler.on_save(path, text)
        self._scheduler.notify_saved(result.path if result else path)
        return result

    def new_document(self) -> Path:
        """Create a template document named from the filename template."""
        name = new_document_filename(self._config.markdown.filename_template)
        path = unique_path(self.root / name)
        try:
            path.write_text(new_document_text(), encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"cannot create document: {e}", path) from e
        logger.info("Created document %s", path.name)
        return path

    def export_documents(self) -> list[Path]:
        """Write a document for every store-only record."""
        return [
            self._reconciler.write_document(record)
            for record in self._store.list()
            if not record.source_document
        ]

    # -------------------------------------------------------------------------
    # Record edits
    # -------------------------------------------------------------------------

    def create_record(self, name: str, content: str = "", *,
                      icon: Optional[str] = None,
                      tags: Optional[Iterable[str]] = None) -> Record:
        """Add a record; with the mirror on, its document is written too."""
        record = self._store.add(Record.new(name.strip(), content, icon=icon, tags=tags))
        if self._reconciler.enabled:
            self._reconciler.write_document(record)
            record = self._store.get_by_id(record.id) or record
        return record

    def edit_record(self, id: str, *,
                    name: Optional[str] = None,
                    content: Optional[str] = None,
                    icon: Optional[str] = None,
                    tags: Optional[Iterable[str]] = None) -> Record:
        """
        Change fields of a record. None leaves a field as is; an empty
        icon clears it. The linked document is rewritten and renamed.
        """
        existing = self._store.get_by_id(id)
        if existing is None:
            raise NotFoundError(id, "edit")
        updated = existing.copy()
        if name is not None:
            updated.name = name.strip()
        if content is not None:
            updated.content = content
        if icon is not None:
            updated.icon = icon or None
        if tags is not None:
            updated.tags = list(tags)
        record = self._store.update(updated)
        if self._reconciler.enabled:
            self._reconciler.write_document(record, previous=existing)
            record = self._store.get_by_id(id) or record
        return record

    def delete_record(self, id: str) -> Optional[Record]:
        """Remove a record and its document. Warnings are logged."""
        removed = self._store.remove(id)
        for warning in self._store.pop_warnings():
            logger.warning(warning)
        return removed

    # -------------------------------------------------------------------------
    # Remote sync
    # -------------------------------------------------------------------------

    def sync(self) -> bool:
        """Commit (and with sync enabled, pull and push), then reload the store."""
        committed = self._git.sync()
        self._store.refresh()
        return committed

    def pull(self) -> Optional[ImportResult]:
        result = self._git.pull()
        self._store.refresh()
        return result

    def connect(self, url: str, action: Optional[SyncAction] = None, *,
                confirmed: bool = False,
                decision: Optional[RemoteDecision] = None) -> tuple[RemoteDecision, Optional[ImportResult]]:
        """
        Probe ``url``, then apply ``action`` (default: the recommendation).

        The URL is saved in the config whatever the action. Pass an earlier
        ``decision`` to skip probing again.
        """
        if decision is None:
            decision = self._git.decide(url)
        chosen = action or decision.recommended
        result = self._git.apply(chosen, url, confirmed=confirmed)
        save_config(self._config)
        if chosen == SyncAction.IMPORT_OVERWRITE:
            self._store.refresh()
        return decision, result

    def _auto_sync(self) -> None:
        self._git.sync()
        self._store.refresh()

    def _on_sync_result(self, report: SyncReport) -> None:
        self.last_sync = report
        if report.ok:
            logger.info("Auto-sync done")

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def set_storage_path(self, path) -> Path:
        """Persist a new storage path and re-point everything at it."""
        root = resolve_storage_path(str(path))
        self._scheduler.cancel()
        self._config.storage_path = str(path)
        save_config(self._config)
        self._store.update_storage_path(root)
        self._git.root = root
        self._scheduler.set_root(root)
        return root

    def close(self) -> None:
        """Cancel pending auto-sync and detach the operations log."""
        self._scheduler.cancel()
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
