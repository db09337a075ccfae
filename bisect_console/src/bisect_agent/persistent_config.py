from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


_SECRET_FIELDS = ("openai_api_key", "github_token")


class WebPersistentConfig(BaseModel):
    # LLM (OpenAI-compatible)
    openai_api_key: str | None = None
    # OPENAI_BASE_URL overrides the default endpoint.
    openai_base_url: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_timeout_sec: int = 60

    # Source forge (pull requests)
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    github_timeout_sec: int = 15

    # Working copies
    repos_base_dir: str = ""

    # Dev servers
    dev_server_port_start: int = 3001
    dev_server_port_end: int = 3100
    dev_server_ready_timeout_sec: int = 30
    dev_server_ready_grace_sec: int = 3
    dev_server_stop_grace_sec: int = 5
    dev_server_install: bool = True
    dev_server_install_timeout_sec: int = 60
    proxy_timeout_sec: int = 10

    # Seconds a bisect mutation waits for another one on the same repo.
    lock_wait_sec: float = 5.0

    version: int = Field(default=1, description="Schema version")


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def config_dir() -> Path:
    return _repo_root() / "config"


def config_path() -> Path:
    raw = os.environ.get("BISECT_WEB_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser()
    return config_dir() / "web_config.json"


def repos_base_dir(cfg: WebPersistentConfig) -> Path:
    raw = (
        os.environ.get("BISECT_REPOS_BASE_DIR", "").strip()
        or (cfg.repos_base_dir or "").strip()
    )
    if raw:
        return Path(raw).expanduser().resolve()
    return (_repo_root() / ".repos").resolve()


def dev_server_db_path() -> Path:
    raw = os.environ.get("BISECT_DEV_SERVER_DB_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return (_repo_root() / ".server-info" / "servers.sqlite3").resolve()


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _apply_env_overrides(cfg: WebPersistentConfig) -> WebPersistentConfig:
    if not (cfg.openai_api_key or "").strip():
        cfg.openai_api_key = os.environ.get("OPENAI_API_KEY") or None
    if not cfg.openai_base_url.strip():
        cfg.openai_base_url = os.environ.get("OPENAI_BASE_URL", "").strip()
    env_model = os.environ.get("OPENAI_MODEL", "").strip()
    if env_model:
        cfg.openai_model = env_model
    if not (cfg.github_token or "").strip():
        cfg.github_token = os.environ.get("GITHUB_TOKEN") or None

    start = _env_int("BISECT_DEV_SERVER_PORT_START")
    end = _env_int("BISECT_DEV_SERVER_PORT_END")
    if start is not None:
        cfg.dev_server_port_start = start
    if end is not None:
        cfg.dev_server_port_end = end
    ready = _env_int("BISECT_DEV_SERVER_READY_TIMEOUT_SEC")
    if ready is not None:
        cfg.dev_server_ready_timeout_sec = ready
    skip_install = os.environ.get("BISECT_DEV_SERVER_SKIP_INSTALL", "").strip().lower()
    if skip_install in {"1", "true", "yes", "on"}:
        cfg.dev_server_install = False
    lock_wait = os.environ.get("BISECT_LOCK_WAIT_SEC", "").strip()
    if lock_wait:
        try:
            cfg.lock_wait_sec = float(lock_wait)
        except ValueError:
            pass
    return cfg


def load_config() -> WebPersistentConfig:
    path = config_path()
    if not path.is_file():
        return _apply_env_overrides(WebPersistentConfig())
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        cfg = WebPersistentConfig(**raw) if isinstance(raw, dict) else WebPersistentConfig()
    except Exception:
        cfg = WebPersistentConfig()
    return _apply_env_overrides(cfg)


def save_config(cfg: WebPersistentConfig) -> None:
    path = config_path()
    d = path.parent
    d.mkdir(parents=True, exist_ok=True)
    payload = cfg.model_dump()

    tmp_fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", dir=str(d))
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
            f.write("\n")
        Path(tmp_name).replace(path)
    finally:
        if Path(tmp_name).exists() and str(Path(tmp_name)) != str(path):
            Path(tmp_name).unlink(missing_ok=True)


def _set_env_if_value(name: str, value: str | None) -> None:
    if value is None:
        return
    if isinstance(value, str) and value.strip() == "":
        os.environ.pop(name, None)
        return
    os.environ[name] = str(value)


def apply_config_to_env(cfg: WebPersistentConfig) -> None:
    _set_env_if_value("OPENAI_API_KEY", cfg.openai_api_key)
    _set_env_if_value("OPENAI_BASE_URL", cfg.openai_base_url)
    _set_env_if_value("OPENAI_MODEL", cfg.openai_model)
    _set_env_if_value("GITHUB_TOKEN", cfg.github_token)


def as_public_dict(cfg: WebPersistentConfig) -> dict[str, Any]:
    data = cfg.model_dump()
    for key in _SECRET_FIELDS:
        raw = data.get(key)
        data[f"{key}_set"] = bool(isinstance(raw, str) and raw.strip())
        data[key] = ""
    return data
