#!/usr/bin/env python3

#────────────
#
# Copyright 2025 Artificial Intelligence Cyber Challenge
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of
# this software and associated documentation files (the “Software”), to deal in the
# Software without restriction, including without limitation the rights to use,
# copy, modify, merge, publish, distribute, sublicense, and/or sell copies of the
# Software, and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
# INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
# PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
# HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION
# OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE
# SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
#
# ────────────

"""bisect_console/src/bisect_agent/git_cli.py
────────────────────────────────────────────

Thin wrapper around the git CLI for a single working copy.

Every call is a blocking shell-out through GitPython's command object. Nothing
here retries: bisect mutations are not idempotent at the git layer, so a failed
command is surfaced to the caller as :class:`GitCommandFailed` carrying git's
own message.

Commands run with ``GIT_TERMINAL_PROMPT=0`` so a credential prompt can never
hang a request handler.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from git import Repo, exc as git_exc

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


LOGGER = logging.getLogger(__name__)

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}
# Unit separator keeps subjects containing tabs or pipes intact.
_FIELD_SEP = "\x1f"
_LOG_FORMAT = f"--format=%H{_FIELD_SEP}%s{_FIELD_SEP}%aI"


class GitCommandFailed(RuntimeError):
    """A git invocation exited with an unexpected status."""

    def __init__(self, args: Sequence[str], status: int | None, stderr: str) -> None:
        self.args_list = [str(a) for a in args]
        self.status = status
        self.stderr = (stderr or "").strip()
        cmd = " ".join(["git", *self.args_list])
        detail = self.stderr or f"exit status {status}"
        super().__init__(f"{cmd} failed: {detail}")


class NotAGitRepository(RuntimeError):
    pass


@dataclass
class GitResult:
    status: int
    stdout: str
    stderr: str


@dataclass
class CommitInfo:
    hash: str
    message: str
    date: str

    def as_dict(self) -> dict[str, str]:
        return {"hash": self.hash, "message": self.message, "date": self.date}


def _parse_log_lines(text: str) -> list[CommitInfo]:
    out: list[CommitInfo] = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        parts = line.split(_FIELD_SEP)
        if len(parts) < 3:
            continue
        out.append(CommitInfo(hash=parts[0].strip(), message=parts[1], date=parts[2].strip()))
    return out


class GitCli:
    """Git command runner bound to one working copy."""

    def __init__(self, repo_dir: Path) -> None:
        self.repo_dir = Path(repo_dir).expanduser().resolve()
        try:
            self.repo = Repo(self.repo_dir)
        except (git_exc.InvalidGitRepositoryError, git_exc.NoSuchPathError) as e:
            raise NotAGitRepository(f"Not a git working copy: {self.repo_dir}") from e
        self.repo.git.update_environment(**_GIT_ENV)

    def run(self, *args: str, ok_codes: Sequence[int] = (0,)) -> GitResult:
        cmd = ["git", *[str(a) for a in args]]
        LOGGER.debug("[git] %s (cwd=%s)", " ".join(cmd), self.repo_dir)
        try:
            status, stdout, stderr = self.repo.git.execute(
                cmd,
                with_extended_output=True,
                with_exceptions=False,
            )
        except git_exc.GitCommandNotFound as e:
            raise GitCommandFailed(args, None, f"git executable not found: {e}") from e
        result = GitResult(status=int(status), stdout=stdout or "", stderr=stderr or "")
        if result.status not in ok_codes:
            raise GitCommandFailed(args, result.status, result.stderr or result.stdout)
        return result

    def rev_parse(self, ref: str) -> str | None:
        ref = (ref or "").strip()
        if not ref or ref.startswith("-"):
            return None
        res = self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", ok_codes=(0, 1, 128))
        if res.status != 0:
            return None
        return res.stdout.strip() or None

    def head(self) -> str:
        return self.run("rev-parse", "HEAD").stdout.strip()

    def current_branch(self) -> str | None:
        res = self.run("symbolic-ref", "--quiet", "--short", "HEAD", ok_codes=(0, 1, 128))
        name = res.stdout.strip()
        return name if res.status == 0 and name else None

    def commit_info(self, ref: str) -> CommitInfo:
        res = self.run("log", "-1", _LOG_FORMAT, ref, "--")
        items = _parse_log_lines(res.stdout)
        if not items:
            raise GitCommandFailed(["log", "-1", ref], res.status, f"no commit found for {ref}")
        return items[0]

    def log_range(self, lower: str, upper: str) -> list[CommitInfo]:
        """Commits reachable from ``upper`` but not ``lower``, oldest first."""
        res = self.run("log", "--reverse", _LOG_FORMAT, f"{lower}..{upper}", "--")
        return _parse_log_lines(res.stdout)

    def merge_base(self, a: str, b: str) -> str | None:
        """Best common ancestor, or None when the histories share no commit."""
        res = self.run("merge-base", a, b, ok_codes=(0, 1))
        if res.status == 1:
            return None
        return res.stdout.strip() or None

    def parent_of(self, ref: str) -> str | None:
        return self.rev_parse(f"{ref}^")

    def files_changed(self, ref: str) -> list[str]:
        res = self.run("show", "--name-only", "--format=", ref, "--")
        return [line.strip() for line in res.stdout.splitlines() if line.strip()]

    def commit_diff(self, ref: str, *, limit: int = 8000) -> str:
        parent = self.parent_of(ref)
        if parent:
            text = self.run("diff", parent, ref).stdout
        else:
            text = self.run("show", ref).stdout
        if limit > 0:
            return text[:limit]
        return text

    def remote_url(self, name: str = "origin", *, push: bool = False) -> str | None:
        args = ["remote", "get-url", *(["--push"] if push else []), name]
        res = self.run(*args, ok_codes=(0, 2, 128))
        url = res.stdout.strip()
        return url if res.status == 0 and url else None

    def local_branches(self) -> list[str]:
        res = self.run("for-each-ref", "--format=%(refname:short)", "refs/heads/")
        return [line.strip() for line in res.stdout.splitlines() if line.strip()]

    def has_user_identity(self) -> bool:
        name = self.run("config", "user.name", ok_codes=(0, 1)).stdout.strip()
        email = self.run("config", "user.email", ok_codes=(0, 1)).stdout.strip()
        return bool(name and email)


def is_git_work_tree(path: Path) -> bool:
    try:
        GitCli(path)
    except NotAGitRepository:
        return False
    return True


def clone_repository(url: str, dest: Path) -> Path:
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("[git] cloning %s -> %s", url, dest)
    try:
        repo = Repo.clone_from(url, dest, env=dict(_GIT_ENV))
    except git_exc.GitCommandError as e:
        raise GitCommandFailed(["clone", url, str(dest)], e.status, str(e.stderr or e)) from e
    LOGGER.info("[git] checked out commit %s", repo.head.commit.hexsha)
    return dest


def copy_repository(src: Path, dest: Path) -> Path:
    src = Path(src).expanduser().resolve()
    if not src.is_dir():
        raise FileNotFoundError(f"Repository path not found: {src}")
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("[git] copying %s -> %s", src, dest)
    shutil.copytree(src, dest, symlinks=True)
    if not is_git_work_tree(dest):
        raise NotAGitRepository(f"Copied path is not a git working copy: {src}")
    return dest
