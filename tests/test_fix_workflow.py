from __future__ import annotations

import json
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "bisect_console" / "src" / "bisect_agent"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import fix_workflow
from errors import FixGenerationError, InvalidRequestError
from git_cli import GitCli
from persistent_config import WebPersistentConfig


class _FixLLM:
    def __init__(self, fixes: list[dict], summary: str = "restore value handling") -> None:
        self.payload = {"fixes": fixes, "summary": summary}
        self.calls = 0

    def invoke(self, messages):
        self.calls += 1
        return SimpleNamespace(content="```json\n" + json.dumps(self.payload) + "\n```")


def _cfg(**kwargs) -> WebPersistentConfig:
    return WebPersistentConfig(openai_api_key="sk-test", **kwargs)


def test_fix_branch_starts_at_parent_and_original_branch_is_restored(linear_repo, git_cmd):
    repo, hashes = linear_repo
    llm = _FixLLM([{"file": "value.txt", "content": "fixed\n", "explanation": "reset value"}])

    result = fix_workflow.run_fix(GitCli(repo), llm, _cfg(), commit_hash=hashes[6][:8], issue="value is wrong")

    branch = f"fix/bug-{hashes[6][:7]}"
    assert result["success"] is True
    assert result["branchName"] == branch
    assert result["fixes"] == [{"file": "value.txt", "explanation": "reset value"}]
    assert result["failedFiles"] == []
    assert result["pushed"] is False
    assert result["prUrl"] is None
    assert result["message"] == f"Fix created in branch {branch}"

    assert git_cmd(repo, "rev-parse", f"{branch}^") == hashes[5]
    assert git_cmd(repo, "rev-parse", branch) == result["commitHash"]
    assert git_cmd(repo, "show", f"{branch}:value.txt") == "fixed"
    assert "value is wrong" in git_cmd(repo, "log", "-1", "--format=%B", branch)

    assert git_cmd(repo, "symbolic-ref", "--short", "HEAD") == "main"
    assert (repo / "value.txt").read_text(encoding="utf-8") == "9\n"


def test_unsafe_paths_are_reported_and_leave_no_branch(linear_repo, git_cmd, tmp_path: Path):
    repo, hashes = linear_repo
    llm = _FixLLM([
        {"file": "../escape.txt", "content": "x", "explanation": ""},
        {"file": ".git/hooks/pre-commit", "content": "x", "explanation": ""},
    ])

    with pytest.raises(FixGenerationError) as excinfo:
        fix_workflow.run_fix(GitCli(repo), llm, _cfg(), commit_hash=hashes[6], issue="bug")

    assert "Failed to apply any fixes" in excinfo.value.message
    assert not (tmp_path / "escape.txt").exists()
    assert not (repo / ".git" / "hooks" / "pre-commit").exists()
    assert git_cmd(repo, "branch", "--list", "fix/*") == ""
    assert git_cmd(repo, "symbolic-ref", "--short", "HEAD") == "main"


def test_partial_fix_keeps_applied_files_and_lists_failures(linear_repo, git_cmd):
    repo, hashes = linear_repo
    llm = _FixLLM([
        {"file": "src/new_module.txt", "content": "new\n", "explanation": "add guard"},
        {"file": "/etc/passwd", "content": "x", "explanation": ""},
    ])

    result = fix_workflow.run_fix(
        GitCli(repo), llm, _cfg(), commit_hash=hashes[6], issue="bug", branch_name="hotfix/guard"
    )

    assert result["branchName"] == "hotfix/guard"
    assert [f["file"] for f in result["fixes"]] == ["src/new_module.txt"]
    assert [f["file"] for f in result["failedFiles"]] == ["/etc/passwd"]
    assert git_cmd(repo, "show", "hotfix/guard:src/new_module.txt") == "new"
    assert not (repo / "src" / "new_module.txt").exists()


def test_empty_model_answer_is_a_generation_error(linear_repo, git_cmd):
    repo, hashes = linear_repo

    with pytest.raises(FixGenerationError) as excinfo:
        fix_workflow.run_fix(GitCli(repo), _FixLLM([]), _cfg(), commit_hash=hashes[6], issue="bug")

    assert "AI did not generate any fixes" in excinfo.value.message
    assert git_cmd(repo, "branch", "--list", "fix/*") == ""


def test_root_commit_is_rejected_before_calling_model(linear_repo):
    repo, hashes = linear_repo
    llm = _FixLLM([{"file": "value.txt", "content": "x", "explanation": ""}])

    with pytest.raises(InvalidRequestError) as excinfo:
        fix_workflow.run_fix(GitCli(repo), llm, _cfg(), commit_hash=hashes[0], issue="bug")

    assert "root commit" in excinfo.value.message
    assert llm.calls == 0


def test_checked_out_branch_cannot_be_the_fix_branch(linear_repo):
    repo, hashes = linear_repo
    llm = _FixLLM([{"file": "value.txt", "content": "x", "explanation": ""}])

    with pytest.raises(InvalidRequestError):
        fix_workflow.run_fix(GitCli(repo), llm, _cfg(), commit_hash=hashes[6], issue="bug", branch_name="main")

    assert llm.calls == 0


def test_fix_branch_is_pushed_when_origin_exists(linear_repo, git_cmd, tmp_path: Path):
    repo, hashes = linear_repo
    bare = tmp_path / "origin.git"
    git_cmd(tmp_path, "init", "-q", "--bare", str(bare))
    git_cmd(repo, "remote", "add", "origin", str(bare))
    llm = _FixLLM([{"file": "value.txt", "content": "fixed\n", "explanation": ""}])

    result = fix_workflow.run_fix(GitCli(repo), llm, _cfg(), commit_hash=hashes[6], issue="bug")

    assert result["pushed"] is True
    assert result["remoteUrl"] == str(bare)
    assert result["prUrl"] is None
    assert "Branch pushed to remote" in result["message"]
    assert git_cmd(bare, "rev-parse", result["branchName"]) == result["commitHash"]


def test_pull_request_opened_for_github_origin(linear_repo, git_cmd, tmp_path: Path, monkeypatch):
    repo, hashes = linear_repo
    bare = tmp_path / "origin.git"
    git_cmd(tmp_path, "init", "-q", "--bare", str(bare))
    git_cmd(repo, "remote", "add", "origin", "https://github.com/acme/widgets.git")
    git_cmd(repo, "remote", "set-url", "--push", "origin", str(bare))

    calls: list[dict] = []

    def _fake_pr(cfg, **kwargs):
        calls.append(kwargs)
        return {"html_url": "https://github.com/acme/widgets/pull/7", "number": 7}

    monkeypatch.setattr(fix_workflow, "_open_pull_request", _fake_pr)
    llm = _FixLLM([{"file": "value.txt", "content": "fixed\n", "explanation": "reset"}])

    result = fix_workflow.run_fix(
        GitCli(repo), llm, _cfg(github_token="ghp-test"), commit_hash=hashes[6], issue="value is wrong"
    )

    assert result["pushed"] is True
    assert result["prNumber"] == 7
    assert result["prUrl"] == "https://github.com/acme/widgets/pull/7"
    assert result["message"] == "Fix created and PR opened: https://github.com/acme/widgets/pull/7"
    assert len(calls) == 1
    assert calls[0]["owner"] == "acme"
    assert calls[0]["repo"] == "widgets"
    assert calls[0]["head"] == result["branchName"]
    assert calls[0]["base"] == "main"
    assert "value is wrong" in calls[0]["body"]
