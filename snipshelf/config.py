"""
Configuration management for the snippet shelf.

The configuration is stored as a TOML file in the config directory
(``~/.snipshelf/snipshelf.toml`` by default). It names the storage root,
the Markdown mirror options and the git sync options.
"""

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "snipshelf.toml"
CONFIG_VERSION = 1

DEFAULT_STORAGE_PATH = "~/.snipshelf/library"
DEFAULT_FILENAME_TEMPLATE = "snippet-{timestamp}.md"
DEFAULT_COMMIT_TEMPLATE = "chore: sync snippets {datetime}"
MIN_AUTO_SYNC_DELAY = 5
DEFAULT_GIT_TIMEOUT = 60

WORKSPACE_TOKEN = "${workspaceFolder}"

_ENV_BRACED = re.compile(r"\$\{env:(\w+)\}")
_ENV_BARE = re.compile(r"\$(\w+)")


def get_config_dir() -> Path:
    """Config directory, respecting SNIPSHELF_CONFIG_DIR."""
    env_dir = os.environ.get("SNIPSHELF_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path.home() / ".snipshelf"


def resolve_storage_path(raw: str, workspace: Optional[Path] = None) -> Path:
    """
    Expand a configured storage path.

    Supports ``~``, ``${workspaceFolder}`` (the workspace root, default cwd),
    ``${env:VAR}`` and ``$VAR``. Unset variables expand to an empty string.
    """
    resolved = raw.strip()
    if resolved.startswith("~"):
        resolved = os.path.expanduser(resolved)
    if WORKSPACE_TOKEN in resolved:
        root = workspace if workspace is not None else Path.cwd()
        resolved = resolved.replace(WORKSPACE_TOKEN, str(root))
    resolved = _ENV_BRACED.sub(lambda m: os.environ.get(m.group(1), ""), resolved)
    resolved = _ENV_BARE.sub(lambda m: os.environ.get(m.group(1), ""), resolved)
    return Path(os.path.normpath(resolved)).resolve()


@dataclass
class MarkdownConfig:
    enable_mirror: bool = True
    filename_template: str = DEFAULT_FILENAME_TEMPLATE


@dataclass
class GitConfig:
    remote_url: str = ""
    enable_sync: bool = False
    auto_sync_on_save: bool = True
    auto_sync_delay_seconds: float = 60
    commit_message_template: str = DEFAULT_COMMIT_TEMPLATE
    timeout_seconds: float = DEFAULT_GIT_TIMEOUT
    debug_log: bool = False

    @property
    def effective_delay(self) -> float:
        """Auto-sync debounce delay, clamped to the minimum."""
        return max(MIN_AUTO_SYNC_DELAY, float(self.auto_sync_delay_seconds))


@dataclass
class ShelfConfig:
    """Complete shelf configuration."""
    config_dir: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    storage_path: str = DEFAULT_STORAGE_PATH
    auto_create: bool = True
    markdown: MarkdownConfig = field(default_factory=MarkdownConfig)
    git: GitConfig = field(default_factory=GitConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.config_dir / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def resolved_storage_path(self, workspace: Optional[Path] = None) -> Path:
        """Storage root after variable expansion; SNIPSHELF_STORAGE_PATH wins."""
        override = os.environ.get("SNIPSHELF_STORAGE_PATH")
        return resolve_storage_path(override or self.storage_path, workspace)


# Keys settable with `snipshelf config set`, mapped to (section, attribute, type)
SETTABLE_KEYS: dict[str, tuple[Optional[str], str, type]] = {
    "storage.path": (None, "storage_path", str),
    "storage.auto_create": (None, "auto_create", bool),
    "markdown.enable_mirror": ("markdown", "enable_mirror", bool),
    "markdown.filename_template": ("markdown", "filename_template", str),
    "git.remote_url": ("git", "remote_url", str),
    "git.enable_sync": ("git", "enable_sync", bool),
    "git.auto_sync_on_save": ("git", "auto_sync_on_save", bool),
    "git.auto_sync_delay_seconds": ("git", "auto_sync_delay_seconds", float),
    "git.commit_message_template": ("git", "commit_message_template", str),
    "git.timeout_seconds": ("git", "timeout_seconds", float),
    "git.debug_log": ("git", "debug_log", bool),
}


def parse_bool(value: Any) -> Optional[bool]:
    """Parse common boolean spellings; None if unrecognized."""
    if isinstance(value, bool):
        return value
    v = str(value).strip().strip("'\"").lower()
    if v in ("true", "yes", "y", "1", "on"):
        return True
    if v in ("false", "no", "n", "0", "off"):
        return False
    return None


def set_config_value(config: ShelfConfig, key: str, value: str) -> None:
    """Set one dotted key from a string value (CLI helper)."""
    if key not in SETTABLE_KEYS:
        raise ValueError(f"Unknown config key: {key!r} (known: {', '.join(sorted(SETTABLE_KEYS))})")
    section, attr, kind = SETTABLE_KEYS[key]
    if kind is bool:
        parsed = parse_bool(value)
        if parsed is None:
            raise ValueError(f"Expected a boolean for {key}, got {value!r}")
        converted: Any = parsed
    elif kind is float:
        try:
            converted = float(value)
        except ValueError:
            raise ValueError(f"Expected a number for {key}, got {value!r}") from None
    else:
        converted = value
    target = getattr(config, section) if section else config
    setattr(target, attr, converted)


def load_config(config_dir: Path) -> ShelfConfig:
    """
    Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("shelf", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    storage = data.get("storage", {})
    md = data.get("markdown", {})
    git = data.get("git", {})

    return ShelfConfig(
        config_dir=config_dir,
        version=version,
        created=data.get("shelf", {}).get("created", ""),
        storage_path=storage.get("path", DEFAULT_STORAGE_PATH),
        auto_create=bool(storage.get("auto_create", True)),
        markdown=MarkdownConfig(
            enable_mirror=bool(md.get("enable_mirror", True)),
            filename_template=md.get("filename_template", DEFAULT_FILENAME_TEMPLATE),
        ),
        git=GitConfig(
            remote_url=git.get("remote_url", ""),
            enable_sync=bool(git.get("enable_sync", False)),
            auto_sync_on_save=bool(git.get("auto_sync_on_save", True)),
            auto_sync_delay_seconds=git.get("auto_sync_delay_seconds", 60),
            commit_message_template=git.get("commit_message_template", DEFAULT_COMMIT_TEMPLATE),
            timeout_seconds=git.get("timeout_seconds", DEFAULT_GIT_TIMEOUT),
            debug_log=bool(git.get("debug_log", False)),
        ),
    )


def save_config(config: ShelfConfig) -> None:
    """
    Save configuration to the config directory.

    Creates the directory if it doesn't exist.
    """
    config.config_dir.mkdir(parents=True, exist_ok=True)

    data = {
        "shelf": {
            "version": config.version,
            "created": config.created,
        },
        "storage": {
            "path": config.storage_path,
            "auto_create": config.auto_create,
        },
        "markdown": {
            "enable_mirror": config.markdown.enable_mirror,
            "filename_template": config.markdown.filename_template,
        },
        "git": {
            "remote_url": config.git.remote_url,
            "enable_sync": config.git.enable_sync,
            "auto_sync_on_save": config.git.auto_sync_on_save,
            "auto_sync_delay_seconds": config.git.auto_sync_delay_seconds,
            "commit_message_template": config.git.commit_message_template,
            "timeout_seconds": config.git.timeout_seconds,
            "debug_log": config.git.debug_log,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(config_dir: Optional[Path] = None) -> ShelfConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_dir = config_dir if config_dir is not None else get_config_dir()
    config_path = config_dir / CONFIG_FILENAME

    if config_path.exists():
        return load_config(config_dir)
    else:
        config = ShelfConfig(config_dir=config_dir)
        save_config(config)
        return config
