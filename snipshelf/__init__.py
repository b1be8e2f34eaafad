"""
Snippet Shelf

A personal collection of reusable text snippets, kept in three places at
once: an authoritative JSON store, one editable Markdown document per
snippet, and (optionally) a git remote.

Quick Start:
    from snipshelf import Shelf

    shelf = Shelf()  # storage root from ~/.snipshelf/snipshelf.toml
    record = shelf.create_record("Deploy checklist", "1. build\\n2. ship", tags=["ops"])
    shelf.document_saved(record.source_document)   # after editing the file

CLI Usage:
    snipshelf list
    snipshelf add "Deploy checklist" -c "1. build ..."
    snipshelf git connect git@example.com:me/snippets.git

Environment Variables:
    SNIPSHELF_CONFIG_DIR     - Override the config directory (~/.snipshelf)
    SNIPSHELF_STORAGE_PATH   - Override the configured storage root
    SNIPSHELF_VERBOSE        - Set to 1 for debug logging
"""

from .api import Shelf
from .errors import SnipshelfError
from .git_sync import GitSync, RemoteStatus, SyncAction
from .reconciler import DocumentState, Reconciler, ReconcileResult
from .record_store import RecordStore
from .types import Record

__version__ = "0.1.0"
__all__ = [
    "Shelf",
    "Record",
    "RecordStore",
    "Reconciler",
    "ReconcileResult",
    "DocumentState",
    "GitSync",
    "RemoteStatus",
    "SyncAction",
    "SnipshelfError",
]
