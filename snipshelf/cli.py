"""
CLI interface for the snippet shelf.

Usage:
    snipshelf list
    snipshelf add "Deploy checklist" -c "1. build ..." -t deploy
    snipshelf reconcile ~/.snipshelf/library/snippet-20240101-120000.md
    snipshelf git connect git@example.com:me/snippets.git
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Shelf
from .config import (
    SETTABLE_KEYS,
    get_config_dir,
    load_or_create_config,
    save_config,
    set_config_value,
)
from .errors import SnipshelfError
from .git_sync import SyncAction, mask_credentials
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Record, local_date


# Quiet by default; SNIPSHELF_VERBOSE=1 turns on debug logging
if os.environ.get("SNIPSHELF_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"snipshelf {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="snipshelf",
    help="Personal snippet shelf with Markdown mirror and git sync.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="SNIPSHELF_STORAGE_PATH",
        help="Path to the storage directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Personal snippet shelf with Markdown mirror and git sync."""
    # No subcommand: list the shelf
    if ctx.invoked_subcommand is None:
        shelf = _get_shelf(None)
        typer.echo(_format_records(shelf.store.list()))


# -----------------------------------------------------------------------------
# Common Options and helpers
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="SNIPSHELF_STORAGE_PATH",
        help="Path to the storage directory (default: from snipshelf.toml)"
    )
]

TagOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--tag", "-t",
        help="Tag (repeatable, or comma-separated)"
    )
]


def _get_shelf(store: Optional[Path]) -> Shelf:
    """Open the shelf, turning setup errors into a clean message."""
    import atexit

    actual_store = store if store is not None else _store_override
    try:
        config = load_or_create_config(get_config_dir())
        shelf = Shelf(config, storage_path=actual_store)
    except (SnipshelfError, OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(shelf.close)
    return shelf


def _split_tags(tags: Optional[list[str]]) -> Optional[list[str]]:
    if tags is None:
        return None
    out: list[str] = []
    for t in tags:
        out.extend(part.strip() for part in t.split(",") if part.strip())
    return out


def _format_record_line(record: Record, name_width: int = 0) -> str:
    line = f"{record.id}  {record.display_name.ljust(name_width)}"
    if record.tags:
        line += f"  [{', '.join(record.tags)}]"
    line += f"  {local_date(record.updated_at)}"
    return line.rstrip()


def _format_records(records: list[Record]) -> str:
    if _get_json_output():
        return json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2)
    if not records:
        return "No snippets."
    width = max(len(r.display_name) for r in records)
    return "\n".join(_format_record_line(r, width) for r in records)


def _format_record(record: Record) -> str:
    if _get_json_output():
        return json.dumps(record.to_dict(), ensure_ascii=False, indent=2)
    lines = [
        f"id: {record.id}",
        f"name: {record.display_name}",
    ]
    if record.tags:
        lines.append(f"tags: {', '.join(record.tags)}")
    lines.append(f"created: {record.created_at}")
    lines.append(f"updated: {record.updated_at}")
    if record.source_document:
        lines.append(f"document: {record.source_document}")
    lines.append("")
    lines.append(record.content)
    return "\n".join(lines)


def _lookup(shelf: Shelf, key: str) -> Optional[Record]:
    """Find a record by id, falling back to an exact name match."""
    return shelf.store.get_by_id(key) or shelf.store.get_by_name(key)


def _read_content(content: Optional[str]) -> Optional[str]:
    if content == "-":
        return sys.stdin.read()
    return content


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@app.command("list")
def list_cmd(
    tag: TagOption = None,
    store: StoreOption = None,
):
    """List snippets, optionally filtered by tag."""
    shelf = _get_shelf(store)
    records = shelf.store.list()
    wanted = _split_tags(tag)
    if wanted:
        records = [r for r in records if all(t in r.tags for t in wanted)]
    typer.echo(_format_records(records))


@app.command()
def show(
    key: Annotated[str, typer.Argument(help="Snippet id or exact name")],
    store: StoreOption = None,
):
    """Show one snippet."""
    shelf = _get_shelf(store)
    record = _lookup(shelf, key)
    if record is None:
        typer.echo(f"Not found: {key}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_record(record))


@app.command()
def search(
    keyword: Annotated[str, typer.Argument(help="Text to look for in names, content and tags")],
    store: StoreOption = None,
):
    """Search snippets (case-insensitive substring)."""
    shelf = _get_shelf(store)
    typer.echo(_format_records(shelf.store.search(keyword)))


@app.command()
def add(
    name: Annotated[str, typer.Argument(help="Snippet name (must be unique)")],
    content: Annotated[Optional[str], typer.Option(
        "--content", "-c", help="Snippet text ('-' reads stdin)"
    )] = None,
    icon: Annotated[Optional[str], typer.Option("--icon", "-i", help="Single emoji")] = None,
    tag: TagOption = None,
    store: StoreOption = None,
):
    """Add a snippet (and its document when the mirror is on)."""
    shelf = _get_shelf(store)
    try:
        record = shelf.create_record(
            name, _read_content(content) or "", icon=icon, tags=_split_tags(tag)
        )
    except SnipshelfError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_record(record) if _get_json_output() else record.id)


@app.command()
def edit(
    key: Annotated[str, typer.Argument(help="Snippet id or exact name")],
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="New name")] = None,
    content: Annotated[Optional[str], typer.Option(
        "--content", "-c", help="New text ('-' reads stdin)"
    )] = None,
    icon: Annotated[Optional[str], typer.Option(
        "--icon", "-i", help="New emoji ('' clears it)"
    )] = None,
    tag: TagOption = None,
    store: StoreOption = None,
):
    """Edit a snippet; its document is rewritten and renamed to match."""
    shelf = _get_shelf(store)
    record = _lookup(shelf, key)
    if record is None:
        typer.echo(f"Not found: {key}", err=True)
        raise typer.Exit(1)
    try:
        record = shelf.edit_record(
            record.id, name=name, content=_read_content(content), icon=icon, tags=_split_tags(tag)
        )
    except SnipshelfError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_record(record))


@app.command("rm")
def rm_cmd(
    key: Annotated[list[str], typer.Argument(help="Snippet id(s) or exact name(s)")],
    store: StoreOption = None,
):
    """Delete snippets and their documents."""
    shelf = _get_shelf(store)
    had_errors = False
    for one in key:
        record = _lookup(shelf, one)
        if record is None:
            typer.echo(f"Not found: {one}", err=True)
            had_errors = True
            continue
        shelf.delete_record(record.id)
        typer.echo(f"Deleted {record.id} ({record.name})")
    if had_errors:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Documents
# -----------------------------------------------------------------------------

@app.command()
def new(store: StoreOption = None):
    """Create a template document and print its path."""
    shelf = _get_shelf(store)
    typer.echo(str(shelf.new_document()))


@app.command()
def reconcile(
    paths: Annotated[list[Path], typer.Argument(help="Saved document(s)")],
    store: StoreOption = None,
):
    """Apply saved documents to the shelf, as an editor save hook would."""
    shelf = _get_shelf(store)
    results = []
    had_errors = False
    for path in paths:
        try:
            result = shelf.document_saved(path, raise_errors=True)
        except SnipshelfError as e:
            typer.echo(f"Error: {e}", err=True)
            had_errors = True
            continue
        if result is None:
            typer.echo(f"Skipped {path}", err=True)
            continue
        verb = "created" if result.created else ("updated" if result.changed else "unchanged")
        entry = {
            "id": result.record.id,
            "name": result.record.name,
            "action": verb,
            "path": str(result.path),
            "state": result.state.value,
            "repaired_markers": result.repaired_markers,
            "warnings": result.warnings,
        }
        if result.renamed_from:
            entry["renamed_from"] = str(result.renamed_from)
        results.append(entry)
        if not _get_json_output():
            line = f"{verb} {result.record.id} ({result.record.name})"
            if result.renamed_from:
                line += f", renamed {result.renamed_from.name} -> {result.path.name}"
            if result.repaired_markers:
                line += f", removed {result.repaired_markers} duplicate marker(s)"
            typer.echo(line)
            for w in result.warnings:
                typer.echo(f"Warning: {w}", err=True)
    if _get_json_output():
        typer.echo(json.dumps(results, ensure_ascii=False, indent=2))
    # Let a pending auto-sync run before exiting
    if shelf.scheduler.pending:
        shelf.scheduler.run_now()
    if had_errors:
        raise typer.Exit(1)


@app.command()
def refresh(store: StoreOption = None):
    """Reload from disk, import new documents and prune orphans."""
    shelf = _get_shelf(store)
    shelf.store.refresh()
    for w in shelf.store.pop_warnings():
        typer.echo(f"Warning: {w}", err=True)
    typer.echo(f"{len(shelf.store)} snippet(s) in {shelf.root}")


@app.command()
def export(store: StoreOption = None):
    """Write documents for snippets that have none."""
    shelf = _get_shelf(store)
    written = shelf.export_documents()
    for path in written:
        typer.echo(str(path))
    typer.echo(f"Exported {len(written)} document(s)", err=True)


@app.command("repair-markers")
def repair_markers(store: StoreOption = None):
    """Remove duplicated identity markers from every document."""
    shelf = _get_shelf(store)
    repaired = shelf.reconciler.repair_all()
    for path, count in repaired.items():
        typer.echo(f"{path}: removed {count}")
    typer.echo(f"Repaired {len(repaired)} document(s)", err=True)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

config_app = typer.Typer(
    name="config",
    help="Show or change configuration.",
    rich_markup_mode=None,
)
app.add_typer(config_app)


@config_app.command("show")
def config_show():
    """Show the configuration file and effective storage path."""
    config = load_or_create_config(get_config_dir())
    if _get_json_output():
        data = {
            "file": str(config.config_path),
            "storage_path": str(config.resolved_storage_path()),
            **{key: _config_value(config, key) for key in sorted(SETTABLE_KEYS)},
        }
        data["git.remote_url"] = mask_credentials(data["git.remote_url"])
        typer.echo(json.dumps(data, indent=2))
        return
    typer.echo(f"file: {config.config_path}")
    typer.echo(f"storage (resolved): {config.resolved_storage_path()}")
    for key in sorted(SETTABLE_KEYS):
        value = _config_value(config, key)
        if key == "git.remote_url":
            value = mask_credentials(value)
        typer.echo(f"{key} = {value}")


def _config_value(config, key: str):
    section, attr, _ = SETTABLE_KEYS[key]
    target = getattr(config, section) if section else config
    return getattr(target, attr)


@config_app.command("set")
def config_set(
    key: Annotated[str, typer.Argument(help="Dotted key, e.g. git.enable_sync")],
    value: Annotated[str, typer.Argument(help="New value")],
):
    """Set one configuration value."""
    config = load_or_create_config(get_config_dir())
    try:
        set_config_value(config, key, value)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    save_config(config)
    shown = _config_value(config, key)
    if key == "git.remote_url":
        shown = mask_credentials(shown)
    typer.echo(f"{key} = {shown}")


# -----------------------------------------------------------------------------
# Git sync
# -----------------------------------------------------------------------------

git_app = typer.Typer(
    name="git",
    help="Remote sync through git.",
    rich_markup_mode=None,
)
app.add_typer(git_app)


def _git_failure(e: SnipshelfError):
    typer.echo(f"Error: {mask_credentials(str(e))}", err=True)
    raise typer.Exit(1)


@git_app.command("status")
def git_status(store: StoreOption = None):
    """Show repository state of the storage root."""
    shelf = _get_shelf(store)
    info = shelf.git.diagnostics()
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    typer.echo(f"root: {info['root']}")
    typer.echo(f"repository: {'yes' if info['is_repository'] else 'no'}")
    if info["is_repository"]:
        typer.echo(f"origin: {info['origin'] or '(none)'}")
        typer.echo(f"branch: {info['head']}")
        typer.echo(f"last commit: {info['last_commit'] or '(none)'}")
        typer.echo(f"changes: {len(info['status'])}, tracked files: {len(info['tracked_files'])}")


@git_app.command("probe")
def git_probe(
    url: Annotated[str, typer.Argument(help="Remote repository URL")],
    store: StoreOption = None,
):
    """Classify a remote: empty, non_empty, not_found, unauthorized, unreachable."""
    shelf = _get_shelf(store)
    decision = shelf.git.decide(url)
    probe = decision.probe
    if _get_json_output():
        typer.echo(json.dumps({
            "status": probe.status.value,
            "detail": probe.detail,
            "recommended": decision.recommended.value,
            "options": [o.value for o in decision.options],
        }, indent=2))
        return
    typer.echo(f"{mask_credentials(url)}: {probe.status.value}")
    if probe.detail:
        typer.echo(f"  {probe.detail}")
    typer.echo(f"recommended: {decision.recommended.value} ({decision.reason})")


@git_app.command("connect")
def git_connect(
    url: Annotated[str, typer.Argument(help="Remote repository URL")],
    action: Annotated[Optional[SyncAction], typer.Option(
        "--action", "-a", help="Override the recommended action"
    )] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Confirm an overwriting import")] = False,
    store: StoreOption = None,
):
    """Connect the storage root to a remote, following the recommendation."""
    shelf = _get_shelf(store)
    decision = shelf.git.decide(url)
    chosen = action or decision.recommended
    if chosen == SyncAction.IMPORT_OVERWRITE and not yes:
        yes = typer.confirm(
            "Import will move local files into a backup folder. Continue?", default=False
        )
        if not yes:
            typer.echo("Aborted.", err=True)
            raise typer.Exit(1)
    try:
        _, result = shelf.connect(url, chosen, confirmed=yes, decision=decision)
    except SnipshelfError as e:
        _git_failure(e)
    typer.echo(f"{chosen.value}: {mask_credentials(url)}")
    if result is not None and result.backup_dir is not None:
        typer.echo(f"Local files moved to {result.backup_dir}", err=True)


@git_app.command("import")
def git_import(
    url: Annotated[Optional[str], typer.Argument(help="Remote URL (default: configured)")] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    store: StoreOption = None,
):
    """Check out the remote's default branch, backing up blocking local files."""
    shelf = _get_shelf(store)
    if not yes and not typer.confirm("Import may move local files into a backup folder. Continue?"):
        raise typer.Exit(1)
    try:
        result = shelf.git.import_from_remote(url)
    except SnipshelfError as e:
        _git_failure(e)
    shelf.store.refresh()
    typer.echo(f"Imported branch {result.branch}")
    if result.backup_dir is not None:
        typer.echo(f"Local files moved to {result.backup_dir}", err=True)


@git_app.command("pull")
def git_pull(store: StoreOption = None):
    """Pull with rebase (imports into a root that is not yet a repository)."""
    shelf = _get_shelf(store)
    try:
        shelf.pull()
    except SnipshelfError as e:
        _git_failure(e)
    typer.echo(f"{len(shelf.store)} snippet(s) after pull")


@git_app.command("push")
def git_push(store: StoreOption = None):
    """Push committed changes to origin."""
    shelf = _get_shelf(store)
    try:
        shelf.git.push()
    except SnipshelfError as e:
        _git_failure(e)
    typer.echo("Pushed")


@git_app.command("sync")
def git_sync_cmd(store: StoreOption = None):
    """Commit all changes; with git.enable_sync, pull (rebase) and push."""
    shelf = _get_shelf(store)
    try:
        committed = shelf.sync()
    except SnipshelfError as e:
        _git_failure(e)
    typer.echo("Committed changes" if committed else "Nothing to commit")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="snipshelf CLI")
        typer.echo(f"Error: {mask_credentials(str(e))}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
