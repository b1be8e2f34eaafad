"""
Shared pytest fixtures for snipshelf tests.

Provides an isolated config directory, a storage root, a scripted git
runner (so orchestration logic is tested without a git binary) and helpers
for tests that drive a real git against a local bare repository.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Optional

import pytest

from snipshelf.config import GitConfig, ShelfConfig
from snipshelf.git_sync import GitResult, GitSync
from snipshelf.reconciler import Reconciler
from snipshelf.record_store import RecordStore


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class FakeGitRunner:
    """
    Scripted stand-in for GitRunner.

    Responses are matched by argv prefix; the most recently registered
    match wins. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self._responses: list[tuple[tuple[str, ...], dict]] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "",
           timed_out: bool = False) -> "FakeGitRunner":
        self._responses.insert(0, (prefix, dict(
            returncode=returncode, stdout=stdout, stderr=stderr, timed_out=timed_out,
        )))
        return self

    def run(self, args, cwd, *, timeout=None) -> GitResult:
        args = list(args)
        self.calls.append(args)
        for prefix, response in self._responses:
            if tuple(args[:len(prefix)]) == prefix:
                return GitResult(args, **response)
        return GitResult(args, 0, "", "")

    def called(self, *prefix: str) -> bool:
        return any(tuple(c[:len(prefix)]) == prefix for c in self.calls)

    def find(self, *prefix: str) -> Optional[list[str]]:
        for c in self.calls:
            if tuple(c[:len(prefix)]) == prefix:
                return c
        return None


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep config, error log and storage overrides inside tmp_path."""
    monkeypatch.setenv("SNIPSHELF_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.delenv("SNIPSHELF_STORAGE_PATH", raising=False)
    monkeypatch.delenv("SNIPSHELF_VERBOSE", raising=False)


@pytest.fixture
def storage_root(tmp_path) -> Path:
    root = tmp_path / "shelf"
    root.mkdir()
    return root


@pytest.fixture
def store(storage_root) -> RecordStore:
    s = RecordStore(storage_root)
    s.initialize()
    return s


@pytest.fixture
def reconciler(store) -> Reconciler:
    return Reconciler(store)


@pytest.fixture
def shelf_config(tmp_path, storage_root) -> ShelfConfig:
    return ShelfConfig(config_dir=tmp_path / "config", storage_path=str(storage_root))


@pytest.fixture
def fake_git() -> FakeGitRunner:
    return FakeGitRunner()


@pytest.fixture
def fake_repo(storage_root, fake_git) -> FakeGitRunner:
    """Fake runner that reports the storage root as an existing repository."""
    fake_git.on("rev-parse", "--show-toplevel", stdout=f"{storage_root}\n")
    return fake_git


@pytest.fixture
def git_sync(storage_root, fake_git) -> GitSync:
    return GitSync(storage_root, GitConfig(), runner=fake_git)


def write_doc(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Real git helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def git_env(tmp_path, monkeypatch):
    """Deterministic identity and no user/system git config."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


def run_git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True,
    )
    return proc.stdout


@pytest.fixture
def bare_remote(tmp_path, git_env) -> Path:
    """An empty bare repository usable as a remote URL."""
    remote = tmp_path / "remote.git"
    remote.mkdir()
    run_git(remote, "init", "--bare")
    return remote


def seed_remote(tmp_path: Path, remote: Path, files: dict[str, str]) -> None:
    """Push one commit with the given files to ``main`` of a bare remote."""
    work = tmp_path / "seed"
    work.mkdir()
    run_git(work, "init")
    for name, text in files.items():
        write_doc(work / name, text)
    run_git(work, "add", "-A")
    run_git(work, "commit", "-m", "seed")
    run_git(work, "branch", "-M", "main")
    run_git(work, "remote", "add", "origin", str(remote))
    run_git(work, "push", "-u", "origin", "main")
    run_git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
