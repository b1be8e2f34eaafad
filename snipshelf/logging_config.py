"""
Logging configuration for snipshelf.

Quiet by default for better CLI UX; debug output on request; a persistent
operations log in the config directory.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress routine output.

    Args:
        quiet: If True, only warnings and errors reach the console.
    """
    if quiet:
        warnings.filterwarnings("ignore", category=DeprecationWarning)
        logging.getLogger("snipshelf").setLevel(logging.WARNING)
    else:
        logging.getLogger("snipshelf").setLevel(logging.INFO)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("snipshelf").setLevel(logging.DEBUG)


def configure_ops_log(config_dir):
    """Configure a persistent operations log.

    Writes to {config_dir}/ops.log using a rotating file handler
    (1MB max, 3 backups). Kept out of the storage root so it is never
    discovered as a document or committed by sync.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(config_dir) / "ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    shelf_logger = logging.getLogger("snipshelf")
    shelf_logger.addHandler(handler)
    # Let INFO through to the file even in quiet mode
    if shelf_logger.level == logging.NOTSET or shelf_logger.level > logging.INFO:
        shelf_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log."""
    if handler is None:
        return
    logging.getLogger("snipshelf").removeHandler(handler)
    handler.close()
