from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import re
import shutil
import stat
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from git_cli import GitCommandFailed, NotAGitRepository, clone_repository, copy_repository, is_git_work_tree

from errors import (
    InvalidRequestError,
    RepositoryBusyError,
    RepositoryNotFoundError,
    RepositorySetupError,
)

LOGGER = logging.getLogger(__name__)

_REPO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

LOCK_DIR_NAME = ".locks"
_LOCK_POLL_SEC = 0.05

_LOCKS_GUARD = threading.Lock()
_REPO_LOCKS: dict[str, threading.Lock] = {}


def normalize_source(*, repo_url: str | None = None, repo_path: str | None = None) -> str:
    url = (repo_url or "").strip()
    path = (repo_path or "").strip()
    if url and path:
        raise InvalidRequestError("Provide either repoUrl or repoPath, not both")
    if not url and not path:
        raise InvalidRequestError("Either repoUrl or repoPath is required")
    if url:
        url = url.rstrip("/")
        if url.endswith(".git"):
            url = url[: -len(".git")]
        return f"url:{url}"
    return f"path:{Path(path).expanduser().resolve()}"


def repo_id_for_source(source: str) -> str:
    return hashlib.sha1(source.encode("utf-8", errors="replace")).hexdigest()[:16]


def repo_dir(base_dir: Path, repo_id: str | None) -> Path:
    rid = (repo_id or "").strip()
    if not rid:
        raise InvalidRequestError("repoId is required")
    if not _REPO_ID_RE.match(rid):
        raise InvalidRequestError(f"Invalid repoId: {rid!r}")
    return Path(base_dir) / rid


def require_repository(base_dir: Path, repo_id: str | None) -> Path:
    path = repo_dir(base_dir, repo_id)
    if not path.is_dir():
        raise RepositoryNotFoundError(f"Repository not found: {repo_id}")
    return path


def _lock_for(repo_id: str) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _REPO_LOCKS.get(repo_id)
        if lock is None:
            lock = threading.Lock()
            _REPO_LOCKS[repo_id] = lock
        return lock


def _forget_lock(repo_id: str) -> None:
    with _LOCKS_GUARD:
        _REPO_LOCKS.pop(repo_id, None)


def lock_file_path(base_dir: Path, repo_id: str) -> Path:
    # Outside the working copy: must exist before a clone and survive a delete.
    return Path(base_dir) / LOCK_DIR_NAME / f"{repo_id}.lock"


def _busy(repo_id: str) -> RepositoryBusyError:
    return RepositoryBusyError(
        f"Another operation is already running on repository {repo_id}",
        suggestion="Wait for the current operation to finish and retry.",
    )


@contextmanager
def repo_lock(base_dir: Path, repo_id: str, *, wait: float) -> Iterator[None]:
    """Serialize git mutations on one working copy.

    A thread mutex orders requests inside this worker; an ``flock`` on a file
    under the base directory orders workers that share it. Both waits come out
    of the same ``wait`` budget.
    """
    wait = max(0.0, float(wait))
    deadline = time.monotonic() + wait
    lock = _lock_for(repo_id)
    if not lock.acquire(timeout=wait):
        raise _busy(repo_id)
    try:
        path = lock_file_path(base_dir, repo_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as fh:
            while True:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        LOGGER.info("[repo] %s is locked by another worker", repo_id)
                        raise _busy(repo_id) from None
                    time.sleep(_LOCK_POLL_SEC)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        lock.release()


def _on_rm_error(func, path, _exc) -> None:
    # git marks pack files read-only.
    os.chmod(path, stat.S_IWRITE)
    func(path)


def _remove_tree(path: Path) -> None:
    if path.exists():
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_on_rm_error)
        else:
            shutil.rmtree(path, onerror=_on_rm_error)


def ensure_repository(
    base_dir: Path,
    *,
    repo_url: str | None = None,
    repo_path: str | None = None,
    lock_wait: float = 5.0,
) -> tuple[str, bool]:
    """Materialize a working copy; returns ``(repo_id, created)``."""
    source = normalize_source(repo_url=repo_url, repo_path=repo_path)
    repo_id = repo_id_for_source(source)
    dest = repo_dir(base_dir, repo_id)

    with repo_lock(base_dir, repo_id, wait=lock_wait):
        if dest.is_dir() and is_git_work_tree(dest):
            LOGGER.info("[repo] reusing working copy %s for %s", repo_id, source)
            return repo_id, False
        if dest.exists():
            LOGGER.warning("[repo] removing incomplete working copy %s", dest)
            _remove_tree(dest)

        try:
            if repo_url and repo_url.strip():
                clone_repository(repo_url.strip(), dest)
            else:
                copy_repository(Path(str(repo_path).strip()), dest)
        except (GitCommandFailed, NotAGitRepository, OSError) as e:
            _remove_tree(dest)
            raise RepositorySetupError(f"Failed to setup repository: {e}") from e

    LOGGER.info("[repo] working copy %s ready at %s", repo_id, dest)
    return repo_id, True


def delete_repository(base_dir: Path, repo_id: str, *, lock_wait: float = 5.0) -> None:
    path = require_repository(base_dir, repo_id)
    with repo_lock(base_dir, repo_id, wait=lock_wait):
        try:
            _remove_tree(path)
        except OSError as e:
            raise RepositorySetupError(f"Failed to delete repository: {e}") from e
    _forget_lock(repo_id)
    LOGGER.info("[repo] deleted working copy %s", repo_id)
