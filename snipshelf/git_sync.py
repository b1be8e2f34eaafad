"""
Remote sync through the ``git`` executable.

The storage root is (optionally) a git repository whose ``origin`` points
at the user's remote. Everything here shells out to git with an explicit
argument list; nothing talks to the network directly.

Credential prompts are disabled (``GIT_TERMINAL_PROMPT=0`` and batch-mode
ssh) so a missing credential fails fast instead of hanging, and remote URLs
are masked before they reach a log line or an error message.
"""

import logging
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .config import DEFAULT_GIT_TIMEOUT, GitConfig
from .document import is_document
from .errors import (
    RemoteNotConfiguredError,
    SnipshelfError,
    SubprocessFailure,
    SubprocessTimeout,
    SyncError,
    UnconfirmedActionError,
)
from .record_store import BACKUP_DIR_PREFIX, in_excluded_dir
from .types import is_inside, resolve_path

logger = logging.getLogger(__name__)


_CREDENTIALS = re.compile(r"//([^@/\s]+)@")

_NOTHING_TO_COMMIT = ("nothing to commit", "no changes added to commit", "working tree clean")

_CHECKOUT_BLOCKED = re.compile(
    r"would be overwritten by checkout"
    r"|untracked working tree files would be overwritten"
    r"|please move or remove them",
    re.IGNORECASE,
)

# Checked in this order: a missing repository first, then credentials
_NOT_FOUND_PATTERNS = (
    "repository not found",
    "does not appear to be a git repository",
    "not found",
    "no such file",
)
_UNAUTHORIZED_PATTERNS = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "access denied",
    "invalid username or password",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
    "publickey",
)

_EXCERPT_LIMIT = 400


def mask_credentials(text: Optional[str]) -> str:
    """Replace ``user:password@`` in URLs with ``***@``."""
    if not text:
        return ""
    return _CREDENTIALS.sub("//***@", text)


def format_commit_message(template: str, now: Optional[datetime] = None) -> str:
    """Expand ``{datetime}`` as ``YYYY-MM-DD HH:MM:SS`` (local time)."""
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return template.replace("{datetime}", stamp)


def _excerpt(text: str) -> str:
    text = mask_credentials(text).strip()
    if len(text) > _EXCERPT_LIMIT:
        text = "..." + text[-_EXCERPT_LIMIT:]
    return text


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ---------------------------------------------------------------------------
# Process runner
# ---------------------------------------------------------------------------

@dataclass
class GitResult:
    """Captured outcome of one git invocation."""
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


class GitRunner:
    """Runs git with an argv list, never through a shell."""

    def __init__(self, executable: str = "git", timeout: float = DEFAULT_GIT_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        # Stable English messages for output classification
        env["LC_ALL"] = "C"
        return env

    def run(self, args: list[str], cwd: Path, *, timeout: Optional[float] = None) -> GitResult:
        argv = [self.executable, *args]
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout or self.timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired as e:
            return GitResult(list(args), -1, _decode(e.stdout), _decode(e.stderr), timed_out=True)
        except FileNotFoundError as e:
            return GitResult(list(args), 127, "", f"cannot run {self.executable}: {e}")
        return GitResult(list(args), proc.returncode, proc.stdout or "", proc.stderr or "")


# ---------------------------------------------------------------------------
# Results and decisions
# ---------------------------------------------------------------------------

class RemoteStatus(Enum):
    EMPTY = "empty"
    NON_EMPTY = "non_empty"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    UNREACHABLE = "unreachable"


class SyncAction(Enum):
    SAVE_ONLY = "save_only"
    UPDATE_ORIGIN_ONLY = "update_origin_only"
    IMPORT_OVERWRITE = "import_overwrite"
    INIT_AND_PUSH = "init_and_push"


@dataclass
class ProbeResult:
    status: RemoteStatus
    detail: str = ""

    @property
    def reachable(self) -> bool:
        return self.status in (RemoteStatus.EMPTY, RemoteStatus.NON_EMPTY)


@dataclass
class ImportResult:
    branch: str
    backup_dir: Optional[Path] = None


@dataclass
class LocalSummary:
    is_repository: bool
    has_commits: bool = False
    tracked_files: int = 0
    origin_url: Optional[str] = None


@dataclass
class RemoteDecision:
    """Recommended action for connecting a remote, plus the alternatives."""
    recommended: SyncAction
    options: list[SyncAction]
    reason: str = ""
    probe: Optional[ProbeResult] = None
    local: Optional[LocalSummary] = None


def classify_probe(result: GitResult) -> ProbeResult:
    """Map ``git ls-remote`` output to a RemoteStatus."""
    if result.timed_out:
        return ProbeResult(RemoteStatus.UNREACHABLE, "timed out")
    if result.returncode == 0:
        if result.stdout.strip():
            return ProbeResult(RemoteStatus.NON_EMPTY)
        return ProbeResult(RemoteStatus.EMPTY)
    detail = _excerpt(result.stderr or result.stdout)
    text = result.output.lower()
    if any(p in text for p in _NOT_FOUND_PATTERNS):
        return ProbeResult(RemoteStatus.NOT_FOUND, detail)
    if any(p in text for p in _UNAUTHORIZED_PATTERNS):
        return ProbeResult(RemoteStatus.UNAUTHORIZED, detail)
    return ProbeResult(RemoteStatus.UNREACHABLE, detail)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class GitSync:
    """
    Git operations on the storage root.

    Args:
        root: Storage root (the working tree)
        config: Git options; ``remote_url`` is updated by ``apply``
        runner: Process runner, replaceable in tests
    """

    def __init__(self, root: Path, config: Optional[GitConfig] = None, *,
                 runner: Optional[GitRunner] = None):
        self._root = resolve_path(root)
        self._config = config if config is not None else GitConfig()
        self._runner = runner if runner is not None else GitRunner(timeout=self._config.timeout_seconds)

    @property
    def root(self) -> Path:
        return self._root

    @root.setter
    def root(self, value) -> None:
        self._root = resolve_path(value)

    @property
    def config(self) -> GitConfig:
        return self._config

    def _git(self, *args: str, check: bool = True) -> GitResult:
        result = self._runner.run(list(args), self._root, timeout=self._config.timeout_seconds)
        logger.debug("git %s -> %s", mask_credentials(" ".join(args)), result.returncode)
        if check:
            self._check(result)
        return result

    def _check(self, result: GitResult) -> None:
        command = mask_credentials(" ".join(["git", *result.args]))
        if result.timed_out:
            raise SubprocessTimeout(
                f"{command}: timed out after {self._config.timeout_seconds}s",
                args=result.args,
                stdout=_excerpt(result.stdout),
                stderr=_excerpt(result.stderr),
            )
        if result.returncode != 0:
            raise SubprocessFailure(
                f"{command}: exit {result.returncode}: {_excerpt(result.stderr or result.stdout)}",
                args=result.args,
                stdout=_excerpt(result.stdout),
                stderr=_excerpt(result.stderr),
                returncode=result.returncode,
            )

    # -------------------------------------------------------------------------
    # Repository primitives
    # -------------------------------------------------------------------------

    def is_repository(self) -> bool:
        """True if the root itself is a work tree top (not a parent's subdirectory)."""
        if not self._root.exists():
            return False
        result = self._git("rev-parse", "--show-toplevel", check=False)
        if not result.ok:
            return False
        return resolve_path(result.stdout.strip()) == self._root

    def ensure_repository(self) -> bool:
        """Initialize the root as a repository if needed. Returns True if created."""
        if self.is_repository():
            return False
        self._root.mkdir(parents=True, exist_ok=True)
        self._git("init")
        self._exclude_backups()
        logger.info("Initialized git repository in %s", self._root)
        return True

    def _exclude_backups(self) -> None:
        exclude = self._root / ".git" / "info" / "exclude"
        pattern = f"{BACKUP_DIR_PREFIX}*/"
        try:
            existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
            if pattern not in existing.splitlines():
                exclude.parent.mkdir(parents=True, exist_ok=True)
                with open(exclude, "a", encoding="utf-8") as f:
                    if existing and not existing.endswith("\n"):
                        f.write("\n")
                    f.write(pattern + "\n")
        except OSError as e:
            logger.warning("Could not update %s: %s", exclude, e)

    def current_remote_url(self) -> Optional[str]:
        result = self._git("remote", "get-url", "origin", check=False)
        url = result.stdout.strip()
        return url if result.ok and url else None

    def set_remote_url(self, url: str) -> None:
        """Point ``origin`` at url, adding the remote if missing."""
        self.ensure_repository()
        result = self._git("remote", "add", "origin", url, check=False)
        if not result.ok:
            self._git("remote", "set-url", "origin", url)
        logger.info("origin -> %s", mask_credentials(url))

    def _ensure_origin(self, url: Optional[str] = None) -> None:
        url = url or self._config.remote_url
        current = self.current_remote_url()
        if url and current != url:
            self.set_remote_url(url)
        elif not current:
            raise RemoteNotConfiguredError("no remote configured; set git.remote_url or run 'git connect'")

    def status_lines(self) -> list[str]:
        return [line for line in self._git("status", "--porcelain").stdout.splitlines() if line]

    def tracked_files(self) -> list[str]:
        return [line for line in self._git("ls-files").stdout.splitlines() if line]

    def has_commits(self) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", "HEAD", check=False).ok

    def has_upstream(self) -> bool:
        return self._git(
            "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}", check=False
        ).ok

    def commit_all(self, template: Optional[str] = None) -> bool:
        """Stage everything and commit. Returns False when there was nothing to commit."""
        self.ensure_repository()
        self._git("add", "-A")
        if not self.status_lines():
            return False
        message = format_commit_message(template or self._config.commit_message_template)
        result = self._git("commit", "-m", message, check=False)
        if not result.ok:
            if any(p in result.output.lower() for p in _NOTHING_TO_COMMIT):
                return False
            self._check(result)
        logger.info("Committed: %s", message)
        return True

    def pull_rebase(self, url: Optional[str] = None) -> Optional[ImportResult]:
        """
        Pull with rebase.

        Without an ``origin`` this falls through to an import from the
        configured remote. When the local branch has no upstream yet, the
        remote default branch is pulled explicitly (and nothing happens if
        the remote has no branches).
        """
        self._log_diagnostics("pull:before")
        self.ensure_repository()
        if not self.current_remote_url():
            if url or self._config.remote_url:
                return self.import_from_remote(url)
            raise RemoteNotConfiguredError("pull: no origin and no git.remote_url configured")

        if self.has_upstream():
            self._git("pull", "--rebase")
        else:
            self._git("fetch", "origin")
            branch = self.detect_default_branch()
            if branch is None:
                logger.info("Remote has no branches yet; nothing to pull")
                return None
            self._git("pull", "--rebase", "origin", branch)
        self._log_diagnostics("pull:after")
        return None

    def push(self) -> None:
        """Push, setting the upstream with ``-u origin HEAD`` the first time."""
        self.ensure_repository()
        self._ensure_origin()
        if self.has_upstream():
            self._git("push")
        else:
            self._git("push", "-u", "origin", "HEAD")
        logger.info("Pushed to %s", mask_credentials(self.current_remote_url()))

    # -------------------------------------------------------------------------
    # Remote inspection
    # -------------------------------------------------------------------------

    def probe_remote(self, url: str) -> ProbeResult:
        """Classify a remote URL with ``git ls-remote``."""
        self._root.mkdir(parents=True, exist_ok=True)
        probe = classify_probe(self._git("ls-remote", url, check=False))
        logger.info("Probe %s: %s", mask_credentials(url), probe.status.value)
        return probe

    def detect_default_branch(self) -> Optional[str]:
        """Default branch of origin, or None for a branchless remote."""
        result = self._git("symbolic-ref", "--quiet", "refs/remotes/origin/HEAD", check=False)
        ref = result.stdout.strip()
        if result.ok and ref.startswith("refs/remotes/origin/"):
            return ref[len("refs/remotes/origin/"):]

        result = self._git("remote", "show", "origin", check=False)
        if result.ok:
            m = re.search(r"HEAD branch:\s*(\S+)", result.stdout)
            if m and m.group(1) != "(unknown)":
                return m.group(1)

        for candidate in ("main", "master"):
            if self._git("rev-parse", "--verify", "--quiet", f"origin/{candidate}", check=False).ok:
                return candidate
        return None

    def local_summary(self) -> LocalSummary:
        if not self.is_repository():
            return LocalSummary(is_repository=False)
        return LocalSummary(
            is_repository=True,
            has_commits=self.has_commits(),
            tracked_files=len(self.tracked_files()),
            origin_url=self.current_remote_url(),
        )

    def diagnostics(self) -> dict[str, Any]:
        """Snapshot of the working tree and repository state."""
        info: dict[str, Any] = {"root": str(self._root)}
        try:
            info["entries"] = sorted(
                e.name + ("/" if e.is_dir() else "")
                for e in self._root.iterdir() if e.name != ".git"
            )
        except OSError as e:
            info["entries_error"] = str(e)
        info["is_repository"] = self.is_repository()
        if not info["is_repository"]:
            return info
        info["origin"] = mask_credentials(self.current_remote_url()) or None
        info["head"] = self._git("rev-parse", "--abbrev-ref", "HEAD", check=False).output
        last = self._git("log", "-1", "--oneline", "--decorate", check=False)
        info["last_commit"] = last.stdout.strip() if last.ok else None
        info["status"] = [l for l in self._git("status", "--porcelain", check=False).stdout.splitlines() if l]
        info["tracked_files"] = [l for l in self._git("ls-files", check=False).stdout.splitlines() if l]
        return info

    def _log_diagnostics(self, stage: str) -> None:
        if not self._config.debug_log:
            return
        info = self.diagnostics()
        logger.info("[%s] root=%s repo=%s", stage, info["root"], info["is_repository"])
        logger.info("[%s] entries(%d): %s", stage, len(info.get("entries", [])),
                    ", ".join(info.get("entries", [])[:30]))
        if info["is_repository"]:
            logger.info("[%s] origin=%s head=%s last=%s", stage, info["origin"],
                        info["head"], info["last_commit"])
            logger.info("[%s] status(%d) tracked(%d)", stage, len(info["status"]),
                        len(info["tracked_files"]))

    # -------------------------------------------------------------------------
    # Import and bootstrap
    # -------------------------------------------------------------------------

    def import_from_remote(self, url: Optional[str] = None) -> ImportResult:
        """
        Check out the remote's default branch into the root.

        If untracked local files block the checkout, every top-level entry
        except ``.git`` (and earlier backups) is moved into a timestamped
        backup directory and the checkout is retried. Nothing is deleted.
        """
        url = url or self._config.remote_url
        self.ensure_repository()
        if url:
            self._ensure_origin(url)
        elif not self.current_remote_url():
            raise RemoteNotConfiguredError("import: no remote URL given or configured")
        self._log_diagnostics("import:before")

        self._git("fetch", "--prune", "origin")
        self._git("remote", "set-head", "origin", "-a", check=False)
        branch = self.detect_default_branch()
        if branch is None:
            raise SyncError("import: remote has no branches to import")

        backup = None
        result = self._git("checkout", "-B", branch, f"origin/{branch}", check=False)
        if not result.ok:
            if not _CHECKOUT_BLOCKED.search(result.output):
                self._check(result)
            backup = self._backup_working_tree()
            self._git("checkout", "-B", branch, f"origin/{branch}")

        logger.info("Imported %s from %s", branch, mask_credentials(url or self.current_remote_url()))
        self._log_diagnostics("import:after")
        return ImportResult(branch=branch, backup_dir=backup)

    def _backup_working_tree(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup = self._root / f"{BACKUP_DIR_PREFIX}{stamp}"
        i = 1
        while backup.exists():
            backup = self._root / f"{BACKUP_DIR_PREFIX}{stamp}-{i}"
            i += 1
        backup.mkdir()
        self._exclude_backups()
        for entry in sorted(self._root.iterdir()):
            if entry.name == ".git" or entry.name.startswith(BACKUP_DIR_PREFIX):
                continue
            shutil.move(str(entry), str(backup / entry.name))
        logger.warning("Moved local files to %s before import", backup.name)
        return backup

    def init_and_push(self, url: str) -> None:
        """Publish the local root to an empty remote as ``main``."""
        self.ensure_repository()
        self.set_remote_url(url)
        self.commit_all()
        if not self.has_commits():
            self._git(
                "commit", "--allow-empty", "-m",
                format_commit_message(self._config.commit_message_template),
            )
        result = self._git("branch", "-M", "main", check=False)
        if not result.ok:
            logger.warning("Could not rename branch to main: %s", _excerpt(result.output))
        self._git("push", "-u", "origin", "main")
        logger.info("Published to %s", mask_credentials(url))

    # -------------------------------------------------------------------------
    # Decision protocol
    # -------------------------------------------------------------------------

    def decide(self, url: Optional[str], probe: Optional[ProbeResult] = None,
               local: Optional[LocalSummary] = None) -> RemoteDecision:
        """Recommend how to connect ``url`` given the remote and local state."""
        if not url:
            return RemoteDecision(SyncAction.SAVE_ONLY, [SyncAction.SAVE_ONLY],
                                  reason="no remote URL")
        probe = probe if probe is not None else self.probe_remote(url)
        local = local if local is not None else self.local_summary()

        if probe.status == RemoteStatus.EMPTY:
            return RemoteDecision(
                SyncAction.INIT_AND_PUSH,
                [SyncAction.INIT_AND_PUSH, SyncAction.UPDATE_ORIGIN_ONLY, SyncAction.SAVE_ONLY],
                reason="remote is empty; publish local snippets",
                probe=probe, local=local,
            )
        if probe.status == RemoteStatus.NON_EMPTY:
            if not local.has_commits or local.tracked_files == 0:
                return RemoteDecision(
                    SyncAction.IMPORT_OVERWRITE,
                    [SyncAction.IMPORT_OVERWRITE, SyncAction.UPDATE_ORIGIN_ONLY, SyncAction.SAVE_ONLY],
                    reason="remote has content and local history is empty; import it",
                    probe=probe, local=local,
                )
            return RemoteDecision(
                SyncAction.UPDATE_ORIGIN_ONLY,
                [SyncAction.UPDATE_ORIGIN_ONLY, SyncAction.IMPORT_OVERWRITE, SyncAction.SAVE_ONLY],
                reason="both sides have history; only point origin at the remote",
                probe=probe, local=local,
            )
        return RemoteDecision(
            SyncAction.SAVE_ONLY,
            [SyncAction.SAVE_ONLY, SyncAction.UPDATE_ORIGIN_ONLY],
            reason=f"remote is {probe.status.value}: {probe.detail}".rstrip(": "),
            probe=probe, local=local,
        )

    def apply(self, action: SyncAction, url: str, *, confirmed: bool = False) -> Optional[ImportResult]:
        """
        Carry out a decision. Every action records ``url`` as the remote.

        Raises:
            UnconfirmedActionError: IMPORT_OVERWRITE without confirmed=True
        """
        if action == SyncAction.IMPORT_OVERWRITE and not confirmed:
            raise UnconfirmedActionError(
                "import_overwrite moves local files aside; pass confirmed=True to proceed"
            )
        self._config.remote_url = url
        if action == SyncAction.UPDATE_ORIGIN_ONLY:
            self.set_remote_url(url)
        elif action == SyncAction.INIT_AND_PUSH:
            self.init_and_push(url)
        elif action == SyncAction.IMPORT_OVERWRITE:
            return self.import_from_remote(url)
        return None

    # -------------------------------------------------------------------------
    # Sync cycles
    # -------------------------------------------------------------------------

    def sync(self) -> bool:
        """Commit local changes; with sync enabled, pull (rebase) then push.

        Returns True if a commit was made.
        """
        committed = self.commit_all()
        if self._config.enable_sync:
            self.pull_rebase()
            self.push()
        return committed

    def pull(self) -> Optional[ImportResult]:
        """Startup pull: import into a fresh root, else pull with rebase."""
        if not self.is_repository():
            if not self._config.remote_url:
                raise RemoteNotConfiguredError(
                    "pull: storage root is not a repository and git.remote_url is not set"
                )
            return self.import_from_remote(self._config.remote_url)
        return self.pull_rebase()


# ---------------------------------------------------------------------------
# Debounced auto-sync
# ---------------------------------------------------------------------------

@dataclass
class SyncReport:
    ok: bool
    error: Optional[Exception] = None
    finished_at: datetime = field(default_factory=datetime.now)


class AutoSyncScheduler:
    """
    Debounces saves into one sync run.

    Each qualifying save (a ``.md`` file inside the root while enabled)
    restarts a single timer. When it fires, ``sync`` runs under a lock so
    two runs never overlap, and the outcome goes to ``on_result``.
    """

    def __init__(self, sync: Callable[[], Any], root: Path, delay_seconds: float, *,
                 enabled: bool = True,
                 on_result: Optional[Callable[[SyncReport], None]] = None):
        self._sync = sync
        self._root = resolve_path(root)
        self._delay = delay_seconds
        self.enabled = enabled
        self._on_result = on_result
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._run_lock = threading.Lock()

    @property
    def pending(self) -> bool:
        with self._timer_lock:
            return self._timer is not None

    def set_root(self, root) -> None:
        self._root = resolve_path(root)

    def notify_saved(self, path) -> bool:
        """Schedule a sync for this save. Returns True if one was scheduled."""
        if not self.enabled or not is_document(path) or not is_inside(self._root, path):
            return False
        if in_excluded_dir(self._root, path):
            return False
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._delay, self._fire)
            self._timer.daemon = True
            self._timer.start()
        logger.debug("Auto-sync scheduled in %.1fs", self._delay)
        return True

    def cancel(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def run_now(self) -> SyncReport:
        """Cancel any pending timer and sync immediately."""
        self.cancel()
        return self._run()

    def _fire(self) -> None:
        with self._timer_lock:
            if self._timer is threading.current_thread():
                self._timer = None
        self._run()

    def _run(self) -> SyncReport:
        with self._run_lock:
            try:
                self._sync()
                report = SyncReport(ok=True)
            except (SnipshelfError, OSError) as e:
                logger.warning("Auto-sync failed: %s", mask_credentials(str(e)))
                report = SyncReport(ok=False, error=e)
        if self._on_result is not None:
            try:
                self._on_result(report)
            except Exception:
                logger.exception("Auto-sync result handler failed")
        return report
