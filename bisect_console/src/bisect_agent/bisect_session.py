"""Bisect session controller.

There is no session store: every operation reconstructs the session from
``git bisect log`` and ``HEAD`` of the working copy. Callers are expected to
hold the repository lock (:func:`repo_store.repo_lock`) around ``start``,
``mark`` and ``reset``; none of them retries, since marking twice advances the
search twice.

``status`` never changes git state. A completed session keeps reporting
``complete`` until it is reset explicitly or replaced by the next ``start``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from git_cli import CommitInfo, GitCli, GitCommandFailed

from commit_range import (
    CommitView,
    classify,
    extract_first_bad,
    parse_bisect_log,
    resolve_range,
)
from errors import (
    CommitNotFoundError,
    InvalidRequestError,
    NoActiveSessionError,
    RangeResolutionError,
    SwappedEndpointsError,
    UnrelatedCommitsError,
)

LOGGER = logging.getLogger(__name__)

VERDICTS = ("good", "bad")

_SWAPPED_MSG = (
    'The commits appear to be swapped. The "good" commit is newer than the "bad" '
    "commit. Please swap them and try again."
)
_DIVERGED_MSG = (
    "The good and bad commits are not on the same line of history. The good "
    "commit must be an ancestor of the bad commit for bisect to work."
)
_UNRELATED_MSG = (
    "The good and bad commits are not related in the git history. The good "
    "commit must be an ancestor of the bad commit."
)


@dataclass
class StartResult:
    current: CommitInfo
    complete: bool = False
    first_bad: CommitInfo | None = None


@dataclass
class MarkResult:
    complete: bool
    current: CommitInfo | None = None
    first_bad: CommitInfo | None = None


@dataclass
class SessionState:
    active: bool = False
    complete: bool = False
    initial_good: str | None = None
    initial_bad: str | None = None
    confirmed_good: list[str] = field(default_factory=list)
    confirmed_bad: list[str] = field(default_factory=list)
    current: CommitInfo | None = None
    first_bad: str | None = None
    commits: list[CommitView] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        if not self.active:
            return {"active": False, "complete": False}
        data: dict[str, object] = {
            "active": True,
            "complete": self.complete,
            "initialGood": self.initial_good,
            "initialBad": self.initial_bad,
            "confirmedGood": list(self.confirmed_good),
            "confirmedBad": list(self.confirmed_bad),
            "firstBadCommit": self.first_bad,
            "commits": [c.as_dict() for c in self.commits],
        }
        if self.current is not None:
            data["currentCommit"] = self.current.hash
            data["commitMessage"] = self.current.message
            data["commitDate"] = self.current.date
        return data


def bisect_log(git: GitCli) -> str:
    """Text of ``git bisect log``; empty when no session is in progress."""
    res = git.run("bisect", "log", ok_codes=(0, 1, 2, 128))
    if res.status != 0:
        return ""
    return res.stdout


def _require_commit(git: GitCli, ref: str, label: str) -> str:
    full = git.rev_parse(ref)
    if not full:
        raise CommitNotFoundError(f'{label} commit "{ref}" not found in repository')
    return full


def _check_ancestry(git: GitCli, good: str, bad: str) -> None:
    if good == bad:
        raise InvalidRequestError(
            "The good and bad commits are the same commit",
            suggestion="Pick a known good commit that is older than the bad commit.",
        )
    base = git.merge_base(good, bad)
    if base is None:
        raise UnrelatedCommitsError(
            _UNRELATED_MSG,
            suggestion="Make sure the good commit comes before the bad commit in history.",
        )
    if base == good:
        return
    if base == bad:
        raise SwappedEndpointsError(
            _SWAPPED_MSG,
            suggestion="Try swapping the good and bad commits.",
        )
    raise UnrelatedCommitsError(
        _DIVERGED_MSG,
        suggestion="Make sure both commits are on the same branch.",
    )


def _first_bad_after(git: GitCli, output: str) -> str:
    found = extract_first_bad(output)
    if found:
        return git.rev_parse(found) or found
    found = extract_first_bad(bisect_log(git))
    if found:
        return git.rev_parse(found) or found
    # git leaves refs/bisect/bad on the culprit once the search ends.
    return git.rev_parse("refs/bisect/bad") or git.head()


def reset(git: GitCli) -> None:
    res = git.run("bisect", "reset", ok_codes=(0, 1, 128))
    if res.status != 0:
        LOGGER.debug("[bisect] reset in %s: %s", git.repo_dir, (res.stderr or res.stdout).strip())


def start(
    git: GitCli,
    good_ref: str,
    bad_ref: str,
    *,
    on_checkout: Callable[[], None] | None = None,
) -> StartResult:
    good = _require_commit(git, good_ref, "Good")
    bad = _require_commit(git, bad_ref, "Bad")
    _check_ancestry(git, good, bad)

    if on_checkout is not None:
        on_checkout()
    reset(git)
    try:
        git.run("bisect", "start")
        git.run("bisect", "bad", bad)
        res = git.run("bisect", "good", good)
    except GitCommandFailed as e:
        reset(git)
        if "not ancestors of the bad rev" in e.stderr:
            raise UnrelatedCommitsError(
                "The good commit is not an ancestor of the bad commit.",
                suggestion="You may have swapped the commits, or they are on different branches.",
            ) from e
        raise

    output = f"{res.stdout}\n{res.stderr}"
    if "first bad commit" in output:
        first_bad = git.commit_info(_first_bad_after(git, output))
        LOGGER.info("[bisect] single-commit range in %s: %s", git.repo_dir, first_bad.hash)
        return StartResult(current=first_bad, complete=True, first_bad=first_bad)

    current = git.commit_info("HEAD")
    LOGGER.info(
        "[bisect] started in %s good=%s bad=%s current=%s",
        git.repo_dir, good[:12], bad[:12], current.hash[:12],
    )
    return StartResult(current=current)


def mark(git: GitCli, verdict: str, *, on_checkout: Callable[[], None] | None = None) -> MarkResult:
    verdict = (verdict or "").strip().lower()
    if verdict not in VERDICTS:
        raise InvalidRequestError('status must be either "good" or "bad"')
    if not bisect_log(git).strip():
        raise NoActiveSessionError(
            "No bisect session is active for this repository",
            suggestion="Start a bisect session first.",
        )

    if on_checkout is not None:
        on_checkout()
    res = git.run("bisect", verdict)
    output = f"{res.stdout}\n{res.stderr}"
    if "first bad commit" in output:
        first_bad = git.commit_info(_first_bad_after(git, output))
        LOGGER.info("[bisect] complete in %s: first bad %s", git.repo_dir, first_bad.hash)
        return MarkResult(complete=True, first_bad=first_bad)

    current = git.commit_info("HEAD")
    LOGGER.info("[bisect] marked %s in %s, next %s", verdict, git.repo_dir, current.hash[:12])
    return MarkResult(complete=False, current=current)


def status(git: GitCli) -> SessionState:
    text = bisect_log(git)
    if not text.strip():
        return SessionState()

    log = parse_bisect_log(text)
    state = SessionState(
        active=True,
        complete=log.complete,
        initial_good=log.initial_good,
        initial_bad=log.initial_bad,
        confirmed_good=list(log.good),
        confirmed_bad=list(log.bad),
        current=git.commit_info("HEAD"),
    )
    if log.first_bad:
        state.first_bad = git.rev_parse(log.first_bad) or log.first_bad

    if log.initial_good and log.initial_bad:
        try:
            commits = resolve_range(git, log.initial_good, log.initial_bad)
        except (RangeResolutionError, GitCommandFailed) as e:
            LOGGER.warning("[bisect] cannot resolve range in %s: %s", git.repo_dir, e)
            commits = []
        state.commits = classify(
            commits,
            confirmed_good=log.good,
            confirmed_bad=log.bad,
            current=state.current.hash if state.current else None,
            first_bad=state.first_bad,
            complete=state.complete,
            initial_good=log.initial_good,
            initial_bad=log.initial_bad,
        ).commits
    return state
