"""Commit range resolution for bisect sessions.

git keeps the only record of a bisect session in its own metadata, exposed as
the text of ``git bisect log``. Everything that needs to know "what has been
marked so far" goes through :func:`parse_bisect_log` so the grammar for that
text lives in one place.

A log written by ``git bisect start`` followed by verdicts looks like::

    git bisect start
    # status: waiting for both good and bad commits
    # bad: [<hash>] subject
    git bisect bad <hash>
    # good: [<hash>] subject
    git bisect good <hash>
    # first bad commit: [<hash>] subject

Older git versions record endpoints passed to ``start`` directly
(``git bisect start '<bad>' '<good>'``); both shapes are accepted.

The range view is a projection for a linear visualization: the commits from the
original good endpoint to the original bad endpoint, oldest first, each labelled
``unknown``, ``good``, ``bad`` or ``testing``. Labels other than ``unknown`` are
only given inside the current bracket, ``[latest good, earliest bad]``, because
bisect discards what it learned about commits that fell out of the search.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from git_cli import CommitInfo, GitCli

from errors import RangeResolutionError


STATUS_UNKNOWN = "unknown"
STATUS_GOOD = "good"
STATUS_BAD = "bad"
STATUS_TESTING = "testing"

_MIN_HASH_PREFIX = 4

_HEX_RE = re.compile(r"^[0-9a-f]{4,40}$", re.IGNORECASE)
_VERDICT_CMD_RE = re.compile(r"^git bisect (good|bad|old|new|skip)\s+(\S+)", re.IGNORECASE)
_START_CMD_RE = re.compile(r"^git bisect start\b(.*)$", re.IGNORECASE)
_VERDICT_COMMENT_RE = re.compile(r"^#\s*(good|bad|old|new|skip):\s*\[([0-9a-f]{4,40})\]", re.IGNORECASE)
_FIRST_BAD_COMMENT_RE = re.compile(r"^#\s*first bad commit:\s*\[([0-9a-f]{4,40})\]", re.IGNORECASE)

# Phrasings git has used to announce the end of a bisect.
_FIRST_BAD_PATTERNS = (
    re.compile(r"\b([0-9a-f]{7,40})\s+is the first bad commit\b", re.IGNORECASE),
    re.compile(r"first bad commit\s+is\s*:?\s*\[?([0-9a-f]{7,40})\]?", re.IGNORECASE),
    re.compile(r"first bad commit\s*:\s*\[?([0-9a-f]{7,40})\]?", re.IGNORECASE),
)

_TERM_ALIASES = {"old": STATUS_GOOD, "new": STATUS_BAD}


@dataclass
class BisectLog:
    started: bool = False
    initial_good: str | None = None
    initial_bad: str | None = None
    good: list[str] = field(default_factory=list)
    bad: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    first_bad: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.first_bad)


@dataclass
class CommitView:
    hash: str
    message: str
    date: str
    status: str = STATUS_UNKNOWN
    is_first_bad: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "hash": self.hash,
            "message": self.message,
            "date": self.date,
            "status": self.status,
            "isFirstBad": self.is_first_bad,
        }


@dataclass
class RangeView:
    commits: list[CommitView]
    # (latest good index, earliest bad index); None when the marks leave no bracket.
    bracket: tuple[int, int] | None


def hashes_match(a: str | None, b: str | None) -> bool:
    """True when one hash is a prefix of the other (abbreviated vs full)."""
    x = (a or "").strip().lower()
    y = (b or "").strip().lower()
    if len(x) < _MIN_HASH_PREFIX or len(y) < _MIN_HASH_PREFIX:
        return False
    return x.startswith(y) or y.startswith(x)


def _matches_any(commit_hash: str, refs: Iterable[str | None]) -> bool:
    return any(hashes_match(commit_hash, ref) for ref in refs)


def _add_unique(items: list[str], commit_hash: str) -> None:
    if not _matches_any(commit_hash, items):
        items.append(commit_hash)


def extract_first_bad(text: str | None) -> str | None:
    """Pull the first-bad commit hash out of ``git bisect`` output or log text."""
    if not text:
        return None
    for pattern in _FIRST_BAD_PATTERNS:
        m = pattern.search(text)
        if m:
            return m.group(1).lower()
    return None


def _record(log: BisectLog, verdict: str, commit_hash: str) -> None:
    verdict = _TERM_ALIASES.get(verdict.lower(), verdict.lower())
    commit_hash = commit_hash.lower()
    if verdict == STATUS_GOOD:
        _add_unique(log.good, commit_hash)
        if log.initial_good is None:
            log.initial_good = commit_hash
    elif verdict == STATUS_BAD:
        _add_unique(log.bad, commit_hash)
        if log.initial_bad is None:
            log.initial_bad = commit_hash
    elif verdict == "skip":
        _add_unique(log.skipped, commit_hash)


def _parse_start_args(raw: str) -> list[str]:
    try:
        tokens = shlex.split(raw)
    except ValueError:
        tokens = raw.split()
    out: list[str] = []
    for token in tokens:
        if token == "--":
            break
        if token.startswith("-"):
            continue
        out.append(token)
    return out


def parse_bisect_log(text: str | None) -> BisectLog:
    log = BisectLog()
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue

        m = _FIRST_BAD_COMMENT_RE.match(line)
        if m:
            log.first_bad = m.group(1).lower()
            continue

        m = _VERDICT_COMMENT_RE.match(line)
        if m:
            _record(log, m.group(1), m.group(2))
            continue

        m = _START_CMD_RE.match(line)
        if m:
            log.started = True
            args = _parse_start_args(m.group(1))
            for idx, rev in enumerate(args):
                if not _HEX_RE.match(rev):
                    continue
                _record(log, STATUS_BAD if idx == 0 else STATUS_GOOD, rev)
            continue

        m = _VERDICT_CMD_RE.match(line)
        if m:
            log.started = True
            if _HEX_RE.match(m.group(2)):
                _record(log, m.group(1), m.group(2))
            continue

    if log.first_bad is None:
        log.first_bad = extract_first_bad(text)
    return log


def resolve_range(git: GitCli, initial_good: str, initial_bad: str) -> list[CommitInfo]:
    """Commits from ``initial_good`` to ``initial_bad`` inclusive, oldest first."""
    good = git.rev_parse(initial_good)
    if not good:
        raise RangeResolutionError(f"Good commit {initial_good!r} cannot be resolved")
    bad = git.rev_parse(initial_bad)
    if not bad:
        raise RangeResolutionError(f"Bad commit {initial_bad!r} cannot be resolved")

    commits = git.log_range(good, bad)
    # The range query excludes its lower bound.
    if not commits or commits[0].hash != good:
        commits.insert(0, git.commit_info(good))

    seen: set[str] = set()
    out: list[CommitInfo] = []
    for commit in commits:
        if commit.hash in seen:
            continue
        seen.add(commit.hash)
        out.append(commit)
    return out


def _index_of(commits: Sequence[CommitInfo], ref: str | None) -> int:
    if not ref:
        return -1
    for i, commit in enumerate(commits):
        if hashes_match(commit.hash, ref):
            return i
    return -1


def compute_bracket(
    commits: Sequence[CommitInfo],
    *,
    confirmed_good: Iterable[str],
    confirmed_bad: Iterable[str],
    initial_good: str | None = None,
    initial_bad: str | None = None,
) -> tuple[int, int] | None:
    goods = [*confirmed_good, initial_good]
    bads = [*confirmed_bad, initial_bad]

    good_indices = [i for i, c in enumerate(commits) if _matches_any(c.hash, goods)]
    bad_indices = [i for i, c in enumerate(commits) if _matches_any(c.hash, bads)]

    latest_good = max(good_indices) if good_indices else _index_of(commits, initial_good)
    earliest_bad = min(bad_indices) if bad_indices else _index_of(commits, initial_bad)

    if latest_good == -1 or earliest_bad == -1 or latest_good >= earliest_bad:
        return None
    return latest_good, earliest_bad


def classify(
    commits: Sequence[CommitInfo],
    *,
    confirmed_good: Iterable[str],
    confirmed_bad: Iterable[str],
    current: str | None,
    first_bad: str | None,
    complete: bool,
    initial_good: str | None = None,
    initial_bad: str | None = None,
) -> RangeView:
    goods = [*confirmed_good, initial_good]
    bads = [*confirmed_bad, initial_bad]
    bracket = compute_bracket(
        commits,
        confirmed_good=confirmed_good,
        confirmed_bad=confirmed_bad,
        initial_good=initial_good,
        initial_bad=initial_bad,
    )

    views: list[CommitView] = []
    flagged = False
    for i, commit in enumerate(commits):
        view = CommitView(hash=commit.hash, message=commit.message, date=commit.date)
        if complete and not flagged and hashes_match(commit.hash, first_bad):
            view.status = STATUS_BAD
            view.is_first_bad = True
            flagged = True
        elif not complete and hashes_match(commit.hash, current):
            view.status = STATUS_TESTING
        elif bracket is None or not (bracket[0] <= i <= bracket[1]):
            view.status = STATUS_UNKNOWN
        elif _matches_any(commit.hash, goods):
            view.status = STATUS_GOOD
        elif _matches_any(commit.hash, bads):
            view.status = STATUS_BAD
        views.append(view)
    return RangeView(commits=views, bracket=bracket)
