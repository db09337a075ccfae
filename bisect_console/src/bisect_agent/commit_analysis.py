from __future__ import annotations

import json
import logging
import re
from typing import Any

from langchain_openai import ChatOpenAI

from git_cli import GitCli

from errors import InvalidRequestError, LLMNotConfiguredError
from persistent_config import WebPersistentConfig

LOGGER = logging.getLogger(__name__)

ANALYSIS_DIFF_LIMIT = 8000

_ANALYSIS_SYSTEM = (
    "You are a code analysis expert. Analyze git commits to determine if they "
    "could cause bugs. Always respond with valid JSON."
)

_ANALYSIS_PROMPT = """You are analyzing a git commit to determine if it might have caused a bug.

ISSUE DESCRIPTION:
{issue}

COMMIT INFORMATION:
- Hash: {short}
- Message: {message}
- Date: {date}
- Files Changed: {files}

CODE CHANGES (diff):
```
{diff}
```

Analyze whether this commit's changes could have caused the issue described above.

Respond in JSON format:
{{
  "likelihood": <number between 0-100, where 0 = definitely not, 100 = definitely yes>,
  "reasoning": "<brief explanation of why this commit might or might not cause the issue>"
}}"""


def llm_or_none(
    cfg: WebPersistentConfig,
    *,
    temperature: float = 0.3,
    max_tokens: int = 600,
) -> ChatOpenAI | None:
    key = (cfg.openai_api_key or "").strip()
    if not key:
        return None
    params: dict[str, Any] = {
        "model": (cfg.openai_model or "").strip() or "gpt-4o-mini",
        "temperature": temperature,
        "max_tokens": max_tokens,
        "timeout": cfg.llm_timeout_sec,
        "openai_api_key": key,
    }
    base_url = (cfg.openai_base_url or "").strip()
    if base_url:
        params["openai_api_base"] = base_url
    return ChatOpenAI(**params)


def require_llm(cfg: WebPersistentConfig, **kwargs: Any) -> ChatOpenAI:
    llm = llm_or_none(cfg, **kwargs)
    if llm is None:
        raise LLMNotConfiguredError(
            "OpenAI API key not configured",
            suggestion="Set OPENAI_API_KEY or save a key through PUT /api/config.",
        )
    return llm


def extract_json_object(text: str) -> dict[str, Any] | None:
    if not text:
        return None
    m = re.search(r"\{[\s\S]*\}", text)
    if not m:
        return None
    try:
        val = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    return val if isinstance(val, dict) else None


def ask_json(llm: Any, system: str, prompt: str) -> dict[str, Any]:
    resp = llm.invoke([("system", system), ("human", prompt)])
    content = getattr(resp, "content", resp)
    if not isinstance(content, str):
        content = str(content)
    data = extract_json_object(content)
    if data is None:
        raise ValueError("model did not return a JSON object")
    return data


def _likelihood(raw: Any) -> int:
    try:
        value = int(round(float(raw)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


def analyze_commit(git: GitCli, llm: Any, issue: str, commit_hash: str) -> dict[str, Any]:
    info = git.commit_info(commit_hash)
    files = git.files_changed(info.hash)
    entry: dict[str, Any] = {
        "commitHash": info.hash,
        "commitMessage": info.message,
        "commitDate": info.date,
        "filesChanged": files,
    }
    try:
        diff = git.commit_diff(info.hash, limit=ANALYSIS_DIFF_LIMIT)
        prompt = _ANALYSIS_PROMPT.format(
            issue=issue,
            short=info.hash[:7],
            message=info.message,
            date=info.date,
            files=", ".join(files),
            diff=diff,
        )
        verdict = ask_json(llm, _ANALYSIS_SYSTEM, prompt)
        entry["likelihood"] = _likelihood(verdict.get("likelihood"))
        entry["reasoning"] = str(verdict.get("reasoning") or "No reasoning provided")
    except Exception as e:
        LOGGER.warning("[analyze] commit %s failed: %s", info.hash[:12], e)
        entry["likelihood"] = 0
        entry["reasoning"] = f"Error analyzing: {e}"
    return entry


def analyze_range(git: GitCli, llm: Any, issue: str, good: str, bad: str) -> dict[str, Any]:
    """Rank every commit in ``good..bad`` by how likely it caused ``issue``."""
    good_full = git.rev_parse(good)
    bad_full = git.rev_parse(bad)
    if not good_full or not bad_full:
        raise InvalidRequestError("Good or bad commit not found in repository")
    commits = git.log_range(good_full, bad_full)
    if not commits:
        raise InvalidRequestError("No commits found between good and bad commit")

    LOGGER.info("[analyze] ranking %d commits in %s", len(commits), git.repo_dir)
    analyses = [analyze_commit(git, llm, issue, c.hash) for c in commits]
    analyses.sort(key=lambda a: a["likelihood"], reverse=True)
    return {"analyses": analyses, "totalCommits": len(commits)}
