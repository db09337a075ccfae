from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "bisect_console" / "src" / "bisect_agent"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))


_GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "author@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def git(repo: Path, *args: str) -> str:
    env = {**os.environ, **_GIT_ENV}
    res = subprocess.run(
        ["git", *args],
        cwd=str(repo),
        env=env,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    return res.stdout.strip()


def make_linear_repo(path: Path, *, count: int = 10, bug_at: int = 6) -> list[str]:
    """Commits c0..c{count-1} on ``main``; ``bug.txt`` appears at ``bug_at``."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.name", "Test Author")
    git(path, "config", "user.email", "author@example.com")
    hashes: list[str] = []
    for i in range(count):
        (path / "value.txt").write_text(f"{i}\n", encoding="utf-8")
        if i == bug_at:
            (path / "bug.txt").write_text("broken\n", encoding="utf-8")
        git(path, "add", "-A")
        git(path, "commit", "-q", "-m", f"c{i}")
        hashes.append(git(path, "rev-parse", "HEAD"))
    return hashes


@pytest.fixture
def git_cmd():
    return git


@pytest.fixture
def linear_repo(tmp_path: Path) -> tuple[Path, list[str]]:
    repo = tmp_path / "work"
    return repo, make_linear_repo(repo)


@pytest.fixture
def repo_factory(tmp_path: Path):
    def _make(name: str, **kwargs) -> tuple[Path, list[str]]:
        repo = tmp_path / name
        return repo, make_linear_repo(repo, **kwargs)

    return _make
