# main.py
from __future__ import annotations
from fastapi import FastAPI, Body, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
import logging
import os
import threading
import time
import urllib.parse
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

from git_cli import GitCli, GitCommandFailed, NotAGitRepository

import bisect_session
from commit_analysis import analyze_range, require_llm
from dev_proxy import forward, proxy_base
from dev_server_manager import DevServerRecord, DevServerRegistry
from errors import (
    BisectWebError,
    DevServerNotRunningError,
    InvalidRequestError,
    RepositoryBusyError,
)
from fix_workflow import run_fix
from persistent_config import (
    WebPersistentConfig,
    apply_config_to_env,
    as_public_dict,
    dev_server_db_path,
    load_config,
    repos_base_dir,
    save_config,
)
from repo_store import (
    delete_repository,
    ensure_repository,
    repo_dir,
    repo_lock,
    require_repository,
)
from server_store import SQLiteServerStore

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    load_dotenv()
    cfg = load_config()
    _cfg_set(cfg)
    apply_config_to_env(cfg)
    _init_dev_servers()
    yield
    registry = _DEV_SERVERS
    if registry is not None:
        registry.stop_all()


app = FastAPI(title="Bisect Console API", version="1.0", lifespan=_lifespan)

_APP_START = time.time()
_INIT_LOCK = threading.Lock()
_DEV_SERVERS: DevServerRegistry | None = None

_CFG_LOCK = threading.Lock()
_CFG: WebPersistentConfig = WebPersistentConfig()

_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _cfg_get() -> WebPersistentConfig:
    with _CFG_LOCK:
        return _CFG


def _cfg_set(cfg: WebPersistentConfig) -> None:
    global _CFG
    with _CFG_LOCK:
        _CFG = cfg
    registry = _DEV_SERVERS
    if registry is not None:
        registry.cfg = cfg


def _init_dev_servers() -> DevServerRegistry:
    global _DEV_SERVERS
    with _INIT_LOCK:
        if _DEV_SERVERS is None:
            store = SQLiteServerStore(dev_server_db_path())
            store.init_schema()
            _DEV_SERVERS = DevServerRegistry(store, _cfg_get())
        return _DEV_SERVERS


def _dev_servers() -> DevServerRegistry:
    return _DEV_SERVERS or _init_dev_servers()


def _base_dir() -> Path:
    return repos_base_dir(_cfg_get())


def _git_for(repo_id: str | None) -> tuple[str, GitCli]:
    path = require_repository(_base_dir(), repo_id)
    return str(repo_id).strip(), GitCli(path)


def _require(fields: dict[str, object], message: str) -> None:
    for value in fields.values():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise InvalidRequestError(message)


def _stop_dev_server(repo_id: str):
    def _stop() -> None:
        _dev_servers().stop(repo_id)

    return _stop


def _server_payload(record: DevServerRecord) -> dict:
    return {
        "port": record.port,
        "appType": record.app_type,
        "pid": record.pid,
        "startedAt": record.started_at,
        "proxyUrl": f"{proxy_base(record.repo_id)}/",
    }


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


@app.exception_handler(BisectWebError)
async def _bisect_error_handler(request: Request, exc: BisectWebError):
    if exc.status_code >= 500:
        LOGGER.error("[api] %s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_payload())


@app.exception_handler(GitCommandFailed)
async def _git_error_handler(request: Request, exc: GitCommandFailed):
    LOGGER.error("[api] %s %s -> git failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(NotAGitRepository)
async def _not_a_repo_handler(request: Request, exc: NotAGitRepository):
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request body", "errors": jsonable_encoder(exc.errors())},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class repo_model(BaseModel):
    repoUrl: str | None = None
    repoPath: str | None = None


class bisect_start_model(BaseModel):
    repoId: str | None = None
    goodCommit: str | None = None
    badCommit: str | None = None


class bisect_mark_model(BaseModel):
    repoId: str | None = None
    status: str | None = None


class repo_ref_model(BaseModel):
    repoId: str | None = None


class analyze_model(BaseModel):
    repoId: str | None = None
    issueDescription: str | None = None
    goodCommit: str | None = None
    badCommit: str | None = None


class fix_model(BaseModel):
    repoId: str | None = None
    commitHash: str | None = None
    issueDescription: str | None = None
    branchName: str | None = None


class dev_server_model(BaseModel):
    repoId: str | None = None
    envVars: dict[str, str] | None = None


class launch_model(BaseModel):
    repoId: str | None = None
    commitHash: str | None = None
    envVars: dict[str, str] | None = None


# ---------------------------------------------------------------------------
# Config / system
# ---------------------------------------------------------------------------


@app.get("/api/config")
def get_config():
    cfg = _cfg_get()
    return as_public_dict(cfg)


@app.put("/api/config")
def put_config(request: WebPersistentConfig = Body(...)):
    if not (1 <= request.dev_server_port_start <= request.dev_server_port_end <= 65535):
        raise InvalidRequestError("dev_server_port_start..dev_server_port_end must be a valid port range")
    if request.lock_wait_sec < 0:
        raise InvalidRequestError("lock_wait_sec must be >= 0")

    current = _cfg_get()
    payload = request.model_dump()
    # Preserve existing secrets when the client submits null for them.
    if request.openai_api_key is None:
        payload["openai_api_key"] = current.openai_api_key
    if request.github_token is None:
        payload["github_token"] = current.github_token
    cfg = WebPersistentConfig(**payload)
    save_config(cfg)
    _cfg_set(cfg)
    apply_config_to_env(cfg)
    return {"ok": True}


@app.get("/api/system")
def get_system_status():
    cfg = _cfg_get()
    base = _base_dir()
    repos = sorted(p.name for p in base.iterdir() if p.is_dir() and not p.name.startswith(".")) if base.is_dir() else []
    registry = _dev_servers()
    servers = []
    for repo_id in registry.store.load_servers():
        record = registry.lookup(repo_id)
        if record is not None:
            servers.append({"repoId": repo_id, **_server_payload(record)})
    return {
        "ok": True,
        "uptime_sec": int(time.time() - _APP_START),
        "repos_base_dir": str(base),
        "repos": repos,
        "dev_servers": servers,
        "llm_configured": bool((cfg.openai_api_key or "").strip()),
        "github_configured": bool((cfg.github_token or "").strip()),
    }


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


@app.post("/api/repo")
def create_repo(request: repo_model = Body(...)):
    cfg = _cfg_get()
    repo_id, created = ensure_repository(
        _base_dir(),
        repo_url=request.repoUrl,
        repo_path=request.repoPath,
        lock_wait=cfg.lock_wait_sec,
    )
    return {
        "repoId": repo_id,
        "created": created,
        "message": "Repository ready" if created else "Repository already available",
    }


@app.delete("/api/repo")
def remove_repo(repoId: str | None = None):
    path = require_repository(_base_dir(), repoId)
    _dev_servers().stop(path.name)
    delete_repository(_base_dir(), path.name, lock_wait=_cfg_get().lock_wait_sec)
    _dev_servers().forget(path.name)
    return {"ok": True, "repoId": path.name}


# ---------------------------------------------------------------------------
# Bisect
# ---------------------------------------------------------------------------


@app.post("/api/bisect/start")
def bisect_start(request: bisect_start_model = Body(...)):
    _require(
        {"repoId": request.repoId, "goodCommit": request.goodCommit, "badCommit": request.badCommit},
        "repoId, goodCommit, and badCommit are required",
    )
    repo_id, git = _git_for(request.repoId)
    with repo_lock(_base_dir(), repo_id, wait=_cfg_get().lock_wait_sec):
        result = bisect_session.start(
            git,
            request.goodCommit.strip(),
            request.badCommit.strip(),
            on_checkout=_stop_dev_server(repo_id),
        )
    payload = {
        "complete": result.complete,
        "currentCommit": result.current.hash,
        "commitMessage": result.current.message,
        "commitDate": result.current.date,
    }
    if result.first_bad is not None:
        payload["firstBadCommit"] = result.first_bad.hash
    return payload


@app.post("/api/bisect/mark")
def bisect_mark(request: bisect_mark_model = Body(...)):
    _require({"repoId": request.repoId, "status": request.status}, "repoId and status (good/bad) are required")
    repo_id, git = _git_for(request.repoId)
    with repo_lock(_base_dir(), repo_id, wait=_cfg_get().lock_wait_sec):
        result = bisect_session.mark(git, request.status, on_checkout=_stop_dev_server(repo_id))
    if result.complete and result.first_bad is not None:
        return {
            "complete": True,
            "firstBadCommit": result.first_bad.hash,
            "commitMessage": result.first_bad.message,
            "commitDate": result.first_bad.date,
        }
    return {
        "complete": False,
        "currentCommit": result.current.hash,
        "commitMessage": result.current.message,
        "commitDate": result.current.date,
    }


@app.get("/api/bisect/status")
def bisect_status(repoId: str | None = None):
    _require({"repoId": repoId}, "repoId is required")
    _, git = _git_for(repoId)
    return bisect_session.status(git).as_dict()


@app.post("/api/bisect/reset")
def bisect_reset(request: repo_ref_model = Body(...)):
    _require({"repoId": request.repoId}, "repoId is required")
    repo_id, git = _git_for(request.repoId)
    with repo_lock(_base_dir(), repo_id, wait=_cfg_get().lock_wait_sec):
        _dev_servers().stop(repo_id)
        bisect_session.reset(git)
    return {"ok": True}


@app.post("/api/bisect/analyze")
def bisect_analyze(request: analyze_model = Body(...)):
    _require(
        {
            "repoId": request.repoId,
            "issueDescription": request.issueDescription,
            "goodCommit": request.goodCommit,
            "badCommit": request.badCommit,
        },
        "repoId, issueDescription, goodCommit, and badCommit are required",
    )
    _, git = _git_for(request.repoId)
    llm = require_llm(_cfg_get(), temperature=0.3, max_tokens=600)
    return analyze_range(
        git,
        llm,
        request.issueDescription.strip(),
        request.goodCommit.strip(),
        request.badCommit.strip(),
    )


@app.post("/api/bisect/fix")
def bisect_fix(request: fix_model = Body(...)):
    _require(
        {"repoId": request.repoId, "commitHash": request.commitHash, "issueDescription": request.issueDescription},
        "repoId, commitHash, and issueDescription are required",
    )
    repo_id, git = _git_for(request.repoId)
    cfg = _cfg_get()
    llm = require_llm(cfg, temperature=0.2, max_tokens=4096)
    with repo_lock(_base_dir(), repo_id, wait=cfg.lock_wait_sec):
        _dev_servers().stop(repo_id)
        return run_fix(
            git,
            llm,
            cfg,
            commit_hash=request.commitHash.strip(),
            issue=request.issueDescription.strip(),
            branch_name=request.branchName,
        )


@app.post("/api/bisect/launch")
def bisect_launch(request: launch_model = Body(...)):
    _require({"repoId": request.repoId, "commitHash": request.commitHash}, "repoId and commitHash are required")
    repo_id, git = _git_for(request.repoId)
    with repo_lock(_base_dir(), repo_id, wait=_cfg_get().lock_wait_sec):
        commit = git.rev_parse(request.commitHash)
        if not commit:
            raise InvalidRequestError(f'Commit "{request.commitHash}" not found in repository')
        if bisect_session.bisect_log(git).strip():
            raise RepositoryBusyError(
                "A bisect session is active on this repository",
                suggestion="Reset the bisect session before launching a specific commit.",
            )
        registry = _dev_servers()
        registry.stop(repo_id)
        git.run("checkout", commit)
        record = registry.start(repo_id, git.repo_dir, request.envVars or {})
    return {"commitHash": commit, **_server_payload(record)}


# ---------------------------------------------------------------------------
# Dev servers
# ---------------------------------------------------------------------------


@app.post("/api/dev-server/start")
def dev_server_start(request: dev_server_model = Body(...)):
    _require({"repoId": request.repoId}, "repoId is required")
    path = require_repository(_base_dir(), request.repoId)
    record = _dev_servers().start(path.name, path, request.envVars or {})
    return {
        "success": True,
        "message": f"Dev server started on port {record.port}",
        **_server_payload(record),
    }


@app.delete("/api/dev-server/start")
def dev_server_stop(repoId: str | None = None):
    _require({"repoId": repoId}, "repoId is required")
    path = require_repository(_base_dir(), repoId)
    stopped = _dev_servers().stop(path.name)
    return {"success": True, "stopped": stopped}


@app.get("/api/dev-server/status")
def dev_server_status(repoId: str | None = None):
    _require({"repoId": repoId}, "repoId is required")
    path = repo_dir(_base_dir(), repoId)
    record = _dev_servers().lookup(path.name)
    if record is None:
        return {"running": False}
    return {"running": True, **_server_payload(record)}


async def _proxy(request: Request, repo_id: str | None, path: str, query: str) -> Response:
    _require({"repoId": repo_id}, "repoId is required")
    rid = repo_dir(_base_dir(), repo_id).name
    record = _dev_servers().lookup(rid)
    if record is None:
        raise DevServerNotRunningError("Dev server not running. Start it first.")
    body = await request.body()
    upstream = await run_in_threadpool(
        forward,
        repo_id=rid,
        port=record.port,
        method=request.method,
        path=path,
        query=query,
        headers=list(request.headers.items()),
        body=body,
        timeout=float(_cfg_get().proxy_timeout_sec),
    )
    headers = {}
    for k, v in upstream.headers:
        # Multiple set-cookie headers collapse in a plain dict.
        if k.lower() == "set-cookie":
            continue
        headers[k] = v
    response = Response(content=upstream.body, status_code=upstream.status, headers=headers)
    for k, v in upstream.headers:
        if k.lower() == "set-cookie":
            response.headers.append("set-cookie", v)
    return response


@app.api_route("/api/dev-server/proxy", methods=_PROXY_METHODS)
async def dev_server_proxy_query(request: Request, repoId: str | None = None, path: str = "/"):
    query = urllib.parse.urlencode(
        [(k, v) for k, v in request.query_params.multi_items() if k not in ("repoId", "path")]
    )
    return await _proxy(request, repoId, path, query)


@app.api_route("/api/dev-server/proxy/{repo_id}", methods=_PROXY_METHODS)
async def dev_server_proxy_root(request: Request, repo_id: str):
    return await _proxy(request, repo_id, "/", request.url.query)


@app.api_route("/api/dev-server/proxy/{repo_id}/{path:path}", methods=_PROXY_METHODS)
async def dev_server_proxy_path(request: Request, repo_id: str, path: str):
    return await _proxy(request, repo_id, path, request.url.query)


@app.get("/")
def service_root():
    return {
        "service": "bisect-console",
        "role": "api-backend-only",
        "entrypoint": "Use /api/repo to register a repository, then /api/bisect/*",
    }


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("BISECT_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(app, host=host, port=port)
