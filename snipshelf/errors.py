"""
Error types and error logging for snipshelf.

Record and document errors are raised to the immediate caller with the
operation and the offending identifier or path in the message. The CLI
logs full stack traces to a file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class SnipshelfError(Exception):
    """Base class for all snipshelf errors."""


# -- Record CRUD --

class DuplicateNameError(SnipshelfError):
    """Another record already uses this name."""

    def __init__(self, name: str, operation: str = "add"):
        self.name = name
        self.operation = operation
        super().__init__(f"{operation}: a record named {name!r} already exists")


class DuplicateIdError(SnipshelfError):
    """Another record already uses this id."""

    def __init__(self, id: str, operation: str = "add"):
        self.id = id
        self.operation = operation
        super().__init__(f"{operation}: a record with id {id!r} already exists")


class NotFoundError(SnipshelfError):
    """No record with this id."""

    def __init__(self, id: str, operation: str = "update"):
        self.id = id
        self.operation = operation
        super().__init__(f"{operation}: no record with id {id!r}")


class InvalidRecordError(SnipshelfError):
    """Record fails validation (e.g. empty name)."""


# -- Documents and files --

class ParseFailure(SnipshelfError):
    """Malformed document front matter. Recoverable: the text is used as body."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(f"parse{where}: {message}")


class PathEscapeError(SnipshelfError):
    """A document path resolves outside the storage root."""

    def __init__(self, path, root, operation: str = "link"):
        self.path = str(path)
        self.root = str(root)
        self.operation = operation
        super().__init__(
            f"{operation}: {self.path} is outside the storage root {self.root}"
        )


class PersistenceError(SnipshelfError):
    """Writing or reading the authoritative file failed."""

    def __init__(self, message: str, path=None):
        self.path = str(path) if path is not None else None
        where = f" {self.path}" if self.path else ""
        super().__init__(f"persist{where}: {message}")


# -- Subprocess / remote sync --

class SubprocessError(SnipshelfError):
    """A git invocation did not complete successfully."""

    def __init__(self, message: str, *, args=(), stdout: str = "", stderr: str = "",
                 returncode: Optional[int] = None):
        self.args_list = list(args)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)


class SubprocessTimeout(SubprocessError):
    """The git process hung and was terminated."""


class SubprocessFailure(SubprocessError):
    """The git process exited non-zero."""


class RemoteNotConfiguredError(SnipshelfError):
    """An operation needs a remote URL but none is configured."""


class SyncError(SnipshelfError):
    """A sync step could not proceed (e.g. no default branch on the remote)."""


class UnconfirmedActionError(SnipshelfError):
    """A destructive remote action was requested without confirmation."""


# -----------------------------------------------------------------------------
# Error log
# -----------------------------------------------------------------------------

def _error_log_path() -> Path:
    """Resolve error log path, respecting SNIPSHELF_CONFIG_DIR."""
    config_dir = os.environ.get("SNIPSHELF_CONFIG_DIR")
    if config_dir:
        return Path(config_dir) / "errors.log"
    return Path.home() / ".snipshelf" / "errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # error log is best-effort
    return log_path
