"""LLM-drafted fix branches for a bug-introducing commit.

The workflow is a small langgraph state machine::

    inspect -> generate -> prepare_branch -> apply -> commit -> publish

Each node either advances the state or records an ``error`` and routes to the
end. Local steps (branch, files, commit) are hard failures; publishing (push
and pull request) only downgrades the response. Whatever happens, the working
copy goes back to the branch or detached commit it was on before the run.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, StateGraph

from git_cli import GitCli, GitCommandFailed

from commit_analysis import ask_json
from errors import (
    BisectWebError,
    CommitNotFoundError,
    FixGenerationError,
    InvalidRequestError,
)
from persistent_config import WebPersistentConfig

LOGGER = logging.getLogger(__name__)

FIX_DIFF_LIMIT = 12000

_IDENTITY = ("-c", "user.name=Bisect Console", "-c", "user.email=bisect-console@localhost")
_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$")

_FIX_SYSTEM = (
    "You are a code expert specializing in bug fixes. Analyze bug-introducing "
    "commits and generate complete, correct fixes. Always respond with valid JSON "
    "containing complete file contents."
)

_FIX_PROMPT = """You are a code expert fixing a bug. A commit introduced a bug, and you need to generate a fix.

ISSUE DESCRIPTION:
{issue}

BUG-INTRODUCING COMMIT:
- Hash: {short}
- Message: {message}
- Files Changed: {files}

CODE CHANGES THAT INTRODUCED THE BUG (diff):
```
{diff}
```

Your task:
1. Analyze the code changes that introduced the bug
2. Understand what the bug is based on the issue description
3. Generate a fix that corrects the bug

Respond in JSON format with the following structure:
{{
  "fixes": [
    {{
      "file": "<relative file path from repo root>",
      "content": "<complete fixed file content>",
      "explanation": "<brief explanation of what was fixed>"
    }}
  ],
  "summary": "<overall summary of the fix>"
}}

IMPORTANT:
- Provide the COMPLETE file content for each file that needs to be fixed
- Only include files that actually need changes
- Make sure the fix addresses the root cause of the bug
- Preserve code style and formatting"""


@dataclass
class CheckoutGuard:
    """What the workflow changed in the working copy, so it can be undone."""

    original_ref: str
    original_branch_name: str | None = None
    branch_name: str = ""
    switched: bool = False
    branch_created: bool = False
    committed: bool = False
    created_files: list[Path] = field(default_factory=list)

    def restore(self, git: GitCli) -> None:
        if not self.switched:
            return
        try:
            if not self.committed:
                git.run("reset", "--hard", "HEAD")
                for path in self.created_files:
                    path.unlink(missing_ok=True)
            git.run("checkout", self.original_ref)
            if self.branch_created and not self.committed:
                git.run("branch", "-D", self.branch_name, ok_codes=(0, 1))
        except (GitCommandFailed, OSError) as e:
            LOGGER.error("[fix] failed to restore %s in %s: %s", self.original_ref, git.repo_dir, e)


class FixWorkflowState(TypedDict, total=False):
    git: GitCli
    llm: Any
    cfg: WebPersistentConfig
    guard: CheckoutGuard

    commit_hash: str
    issue: str
    branch_name: str

    parent: str
    commit_message: str
    files_changed: list[str]
    diff: str

    fixes: list[dict[str, str]]
    summary: str
    applied: list[dict[str, str]]
    failed: list[dict[str, str]]
    fix_commit: str

    remote_url: str | None
    pushed: bool
    pr_url: str | None
    pr_number: int | None

    error: BisectWebError | None


def _step(fn: Callable[[FixWorkflowState], dict[str, Any]]) -> Callable[[FixWorkflowState], dict[str, Any]]:
    def _run(state: FixWorkflowState) -> dict[str, Any]:
        try:
            return fn(state)
        except BisectWebError as e:
            return {"error": e}
        except GitCommandFailed as e:
            return {"error": BisectWebError(f"Failed to create fix: {e}")}

    _run.__name__ = fn.__name__
    return _run


@_step
def _node_inspect(state: FixWorkflowState) -> dict[str, Any]:
    git = state["git"]
    commit = state["commit_hash"]
    parent = git.parent_of(commit)
    if not parent:
        raise InvalidRequestError("Cannot create fix: commit has no parent (root commit)")

    branch = state["branch_name"]
    res = git.run("check-ref-format", "--branch", branch, ok_codes=(0, 1, 128))
    if res.status != 0:
        raise InvalidRequestError(f"Invalid branch name: {branch!r}")
    if branch == git.current_branch():
        raise InvalidRequestError(
            f"Branch {branch!r} is currently checked out",
            suggestion="Pick a different branchName.",
        )

    return {
        "parent": parent,
        "commit_message": git.commit_info(commit).message,
        "files_changed": git.files_changed(commit),
        "diff": git.commit_diff(commit, limit=FIX_DIFF_LIMIT),
    }


@_step
def _node_generate(state: FixWorkflowState) -> dict[str, Any]:
    prompt = _FIX_PROMPT.format(
        issue=state["issue"],
        short=state["commit_hash"][:7],
        message=state.get("commit_message") or "",
        files=", ".join(state.get("files_changed") or []),
        diff=state.get("diff") or "",
    )
    try:
        data = ask_json(state["llm"], _FIX_SYSTEM, prompt)
    except Exception as e:
        raise FixGenerationError(f"Failed to generate fix: {e}") from e

    fixes: list[dict[str, str]] = []
    for item in data.get("fixes") or []:
        if not isinstance(item, dict):
            continue
        file = item.get("file")
        content = item.get("content")
        if not isinstance(file, str) or not file.strip() or not isinstance(content, str):
            continue
        fixes.append({
            "file": file.strip(),
            "content": content,
            "explanation": str(item.get("explanation") or ""),
        })
    if not fixes:
        raise FixGenerationError("AI did not generate any fixes")

    summary = str(data.get("summary") or "").strip()
    LOGGER.info("[fix] model proposed %d file change(s)", len(fixes))
    return {"fixes": fixes, "summary": summary}


@_step
def _node_prepare_branch(state: FixWorkflowState) -> dict[str, Any]:
    git = state["git"]
    guard = state["guard"]
    branch = state["branch_name"]
    existed = branch in git.local_branches()

    # -B recreates an existing branch at the parent.
    git.run("checkout", "-B", branch, state["parent"])
    guard.switched = True
    guard.branch_name = branch
    guard.branch_created = not existed
    LOGGER.info("[fix] %s branch %s at %s", "recreated" if existed else "created", branch, state["parent"][:12])
    return {"branch_name": branch}


def _resolve_target(repo_dir: Path, rel: str) -> Path | None:
    target = (repo_dir / rel).resolve()
    try:
        parts = target.relative_to(repo_dir).parts
    except ValueError:
        return None
    if not parts or parts[0] == ".git":
        return None
    return target


@_step
def _node_apply(state: FixWorkflowState) -> dict[str, Any]:
    git = state["git"]
    guard = state["guard"]
    applied: list[dict[str, str]] = []
    failed: list[dict[str, str]] = []

    for fix in state.get("fixes") or []:
        target = _resolve_target(git.repo_dir, fix["file"])
        if target is None:
            failed.append({"file": fix["file"], "error": "path is outside the repository"})
            continue
        try:
            existed = target.exists()
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(fix["content"], encoding="utf-8")
        except OSError as e:
            LOGGER.warning("[fix] cannot write %s: %s", fix["file"], e)
            failed.append({"file": fix["file"], "error": str(e)})
            continue
        if not existed:
            guard.created_files.append(target)
        applied.append({"file": target.relative_to(git.repo_dir).as_posix(), "explanation": fix["explanation"]})

    if not applied:
        raise FixGenerationError("Failed to apply any fixes")
    return {"applied": applied, "failed": failed}


@_step
def _node_commit(state: FixWorkflowState) -> dict[str, Any]:
    git = state["git"]
    commit = state["commit_hash"]
    summary = state.get("summary") or f"Fix bug introduced in commit {commit[:7]}"
    message = (
        f"Fix: {summary}\n\n"
        f"Fixes bug introduced in commit {commit}\n"
        f"Issue: {state['issue']}"
    )

    git.run("add", "--", *[a["file"] for a in state.get("applied") or []])
    identity = () if git.has_user_identity() else _IDENTITY
    git.run(*identity, "commit", "-m", message)
    state["guard"].committed = True
    fix_commit = git.head()
    LOGGER.info("[fix] committed %s on %s", fix_commit[:12], state["branch_name"])
    return {"fix_commit": fix_commit}


def _pr_base(git: GitCli, original_branch: str | None) -> str:
    if original_branch in ("main", "master"):
        return original_branch
    branches = git.local_branches()
    for name in ("main", "master"):
        if name in branches:
            return name
    return original_branch or "main"


def _open_pull_request(
    cfg: WebPersistentConfig,
    *,
    owner: str,
    repo: str,
    head: str,
    base: str,
    title: str,
    body: str,
) -> dict[str, Any]:
    url = f"{cfg.github_api_url.rstrip('/')}/repos/{owner}/{repo}/pulls"
    payload = json.dumps({"title": title, "head": head, "base": base, "body": body}).encode("utf-8")
    headers = {
        "Authorization": f"token {cfg.github_token}",
        "Accept": "application/vnd.github.v3+json",
        "Content-Type": "application/json",
        "User-Agent": "bisect-console/1.0",
    }
    req = urllib.request.Request(url, data=payload, headers=headers, method="POST")
    with urllib.request.urlopen(req, timeout=cfg.github_timeout_sec) as resp:
        raw = resp.read()
    return json.loads(raw.decode("utf-8", errors="replace"))


def _pr_body(state: FixWorkflowState, summary: str) -> str:
    files = "\n".join(f"- `{a['file']}`: {a['explanation']}" for a in state.get("applied") or [])
    return (
        f"## Fix Summary\n\n{summary}\n\n"
        f"## Issue\n\n{state['issue']}\n\n"
        f"## Files Changed\n\n{files}\n\n"
        f"## Bug-Introducing Commit\n\n`{state['commit_hash']}`\n"
    )


def _node_publish(state: FixWorkflowState) -> dict[str, Any]:
    git = state["git"]
    cfg = state["cfg"]
    branch = state["branch_name"]
    out: dict[str, Any] = {"remote_url": None, "pushed": False, "pr_url": None, "pr_number": None}

    try:
        remote = git.remote_url("origin")
    except GitCommandFailed as e:
        LOGGER.warning("[fix] cannot read origin remote: %s", e)
        return out
    out["remote_url"] = remote
    if not remote:
        return out

    try:
        git.run("push", "--set-upstream", "origin", branch)
        out["pushed"] = True
        LOGGER.info("[fix] pushed %s to origin", branch)
    except GitCommandFailed as e:
        LOGGER.warning("[fix] push of %s failed: %s", branch, e)
        return out

    token = (cfg.github_token or "").strip()
    m = _GITHUB_REMOTE_RE.search(remote)
    if not token or m is None:
        return out

    summary = state.get("summary") or f"Fix for bug introduced in commit {state['commit_hash'][:7]}"
    try:
        pr = _open_pull_request(
            cfg,
            owner=m.group(1),
            repo=m.group(2),
            head=branch,
            base=_pr_base(git, state["guard"].original_branch_name),
            title=f"Fix: {summary}",
            body=_pr_body(state, summary),
        )
    except (urllib.error.URLError, OSError, ValueError) as e:
        LOGGER.warning("[fix] pull request for %s failed: %s", branch, e)
        return out
    out["pr_url"] = pr.get("html_url")
    out["pr_number"] = pr.get("number")
    LOGGER.info("[fix] opened PR #%s: %s", out["pr_number"], out["pr_url"])
    return out


def _route(next_node: str) -> Callable[[FixWorkflowState], str]:
    def _route_after(state: FixWorkflowState) -> str:
        return "stop" if state.get("error") is not None else next_node

    return _route_after


def build_fix_workflow() -> StateGraph:
    graph: StateGraph = StateGraph(FixWorkflowState)

    graph.add_node("inspect", _node_inspect)
    graph.add_node("generate", _node_generate)
    graph.add_node("prepare_branch", _node_prepare_branch)
    graph.add_node("apply", _node_apply)
    graph.add_node("commit", _node_commit)
    graph.add_node("publish", _node_publish)

    graph.set_entry_point("inspect")

    graph.add_conditional_edges("inspect", _route("generate"), {"generate": "generate", "stop": END})
    graph.add_conditional_edges("generate", _route("prepare_branch"), {"prepare_branch": "prepare_branch", "stop": END})
    graph.add_conditional_edges("prepare_branch", _route("apply"), {"apply": "apply", "stop": END})
    graph.add_conditional_edges("apply", _route("commit"), {"commit": "commit", "stop": END})
    graph.add_conditional_edges("commit", _route("publish"), {"publish": "publish", "stop": END})
    graph.add_edge("publish", END)
    return graph


def run_fix(
    git: GitCli,
    llm: Any,
    cfg: WebPersistentConfig,
    *,
    commit_hash: str,
    issue: str,
    branch_name: str | None = None,
) -> dict[str, Any]:
    commit = git.rev_parse(commit_hash)
    if not commit:
        raise CommitNotFoundError(f'Commit "{commit_hash}" not found in repository')
    branch = (branch_name or "").strip() or f"fix/bug-{commit[:7]}"

    original_branch = git.current_branch()
    guard = CheckoutGuard(original_ref=original_branch or git.head(), original_branch_name=original_branch)

    wf = build_fix_workflow().compile()
    try:
        final = wf.invoke({
            "git": git,
            "llm": llm,
            "cfg": cfg,
            "guard": guard,
            "commit_hash": commit,
            "issue": issue,
            "branch_name": branch,
            "error": None,
        })
    finally:
        guard.restore(git)

    error = final.get("error")
    if error is not None:
        raise error

    pr_url = final.get("pr_url")
    remote_url = final.get("remote_url")
    if pr_url:
        message = f"Fix created and PR opened: {pr_url}"
    elif final.get("pushed"):
        message = f"Fix created in branch {branch}. Branch pushed to remote."
    else:
        message = f"Fix created in branch {branch}"

    return {
        "success": True,
        "branchName": branch,
        "commitHash": final.get("fix_commit"),
        "fixes": final.get("applied") or [],
        "failedFiles": final.get("failed") or [],
        "summary": final.get("summary") or "",
        "message": message,
        "pushed": bool(final.get("pushed")),
        "prUrl": pr_url,
        "prNumber": final.get("pr_number"),
        "remoteUrl": remote_url,
    }
