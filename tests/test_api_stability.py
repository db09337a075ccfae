from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "bisect_console" / "src" / "bisect_agent"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import main as web_main
import repo_store
from persistent_config import WebPersistentConfig


@pytest.fixture(autouse=True)
def _isolate_runtime_state(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("BISECT_REPOS_BASE_DIR", str(tmp_path / "repos"))
    monkeypatch.setenv("BISECT_DEV_SERVER_DB_PATH", str(tmp_path / "servers.sqlite3"))
    monkeypatch.setenv("BISECT_WEB_CONFIG_PATH", str(tmp_path / "web_config.json"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setattr(web_main, "save_config", lambda cfg: None)
    monkeypatch.setattr(web_main, "apply_config_to_env", lambda cfg: None)
    monkeypatch.setattr(web_main, "_DEV_SERVERS", None)
    yield


def _register(client: TestClient, path: Path) -> str:
    response = client.post("/api/repo", json={"repoPath": str(path)})
    assert response.status_code == 200
    return response.json()["repoId"]


def test_get_config_masks_secret_values():
    with TestClient(web_main.app) as client:
        web_main._cfg_set(WebPersistentConfig(openai_api_key="openai-secret", github_token="gh-secret"))
        response = client.get("/api/config")

    assert response.status_code == 200
    data = response.json()
    assert data["openai_api_key"] == ""
    assert data["github_token"] == ""
    assert data["openai_api_key_set"] is True
    assert data["github_token_set"] is True


def test_put_config_preserves_existing_secrets_when_payload_is_null():
    with TestClient(web_main.app) as client:
        web_main._cfg_set(WebPersistentConfig(openai_api_key="keep-openai", github_token="keep-gh"))
        response = client.put(
            "/api/config",
            json={"openai_api_key": None, "github_token": None, "openai_model": "gpt-4o"},
        )
        cfg = web_main._cfg_get()

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert cfg.openai_api_key == "keep-openai"
    assert cfg.github_token == "keep-gh"
    assert cfg.openai_model == "gpt-4o"


def test_put_config_rejects_inverted_port_range():
    with TestClient(web_main.app) as client:
        response = client.put(
            "/api/config",
            json={"dev_server_port_start": 4000, "dev_server_port_end": 3000},
        )

    assert response.status_code == 400
    assert "port range" in response.json()["detail"]


def test_repo_registration_is_reused_and_deletable(linear_repo):
    source, _ = linear_repo
    with TestClient(web_main.app) as client:
        first = client.post("/api/repo", json={"repoPath": str(source)})
        second = client.post("/api/repo", json={"repoPath": str(source)})
        repo_id = first.json()["repoId"]
        deleted = client.delete("/api/repo", params={"repoId": repo_id})
        missing = client.delete("/api/repo", params={"repoId": repo_id})

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.json() == {"repoId": repo_id, "created": False, "message": "Repository already available"}
    assert deleted.status_code == 200
    assert missing.status_code == 404


def test_request_validation_errors_are_400():
    with TestClient(web_main.app) as client:
        neither = client.post("/api/repo", json={})
        missing = client.post("/api/bisect/start", json={"repoId": "abc", "goodCommit": "x"})
        wrong_type = client.post("/api/bisect/start", json=["not", "an", "object"])
        bad_id = client.get("/api/bisect/status", params={"repoId": "../etc"})
        unknown = client.get("/api/bisect/status", params={"repoId": "deadbeef"})

    assert neither.status_code == 400
    assert missing.status_code == 400
    assert missing.json()["detail"] == "repoId, goodCommit, and badCommit are required"
    assert wrong_type.status_code == 400
    assert wrong_type.json()["detail"] == "Invalid request body"
    assert bad_id.status_code == 400
    assert unknown.status_code == 404


def test_bisect_flow_over_http_finds_first_bad_commit(linear_repo, tmp_path: Path):
    source, hashes = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        work = tmp_path / "repos" / repo_id

        idle = client.get("/api/bisect/status", params={"repoId": repo_id})
        assert idle.json() == {"active": False, "complete": False}

        started = client.post(
            "/api/bisect/start",
            json={"repoId": repo_id, "goodCommit": hashes[0], "badCommit": hashes[9]},
        )
        assert started.status_code == 200
        assert started.json()["complete"] is False
        assert started.json()["currentCommit"] in hashes[1:9]

        mid = client.get("/api/bisect/status", params={"repoId": repo_id}).json()
        assert mid["active"] is True
        assert mid["currentCommit"] == started.json()["currentCommit"]
        assert len(mid["commits"]) == 10

        result = {}
        for _ in range(6):
            verdict = "bad" if (work / "bug.txt").exists() else "good"
            result = client.post("/api/bisect/mark", json={"repoId": repo_id, "status": verdict}).json()
            if result["complete"]:
                break
        assert result["complete"] is True
        assert result["firstBadCommit"] == hashes[6]
        assert result["commitMessage"] == "c6"

        done = client.get("/api/bisect/status", params={"repoId": repo_id}).json()
        again = client.get("/api/bisect/status", params={"repoId": repo_id}).json()
        assert done == again
        assert done["complete"] is True
        assert done["firstBadCommit"] == hashes[6]
        assert [c["hash"] for c in done["commits"] if c["isFirstBad"]] == [hashes[6]]

        reset = client.post("/api/bisect/reset", json={"repoId": repo_id})
        assert reset.json() == {"ok": True}
        after = client.get("/api/bisect/status", params={"repoId": repo_id}).json()
        assert after == {"active": False, "complete": False}


def test_swapped_commits_return_suggestion(linear_repo):
    source, hashes = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        response = client.post(
            "/api/bisect/start",
            json={"repoId": repo_id, "goodCommit": hashes[9], "badCommit": hashes[0]},
        )
        status = client.get("/api/bisect/status", params={"repoId": repo_id})

    assert response.status_code == 400
    body = response.json()
    assert "swapped" in body["detail"]
    assert body["suggestion"]
    assert status.json()["active"] is False


def test_mark_without_session_is_rejected(linear_repo):
    source, _ = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        response = client.post("/api/bisect/mark", json={"repoId": repo_id, "status": "good"})
        invalid = client.post("/api/bisect/mark", json={"repoId": repo_id, "status": "maybe"})

    assert response.status_code == 400
    assert invalid.status_code == 400


def test_analyze_without_api_key_is_server_error(linear_repo):
    source, hashes = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        response = client.post(
            "/api/bisect/analyze",
            json={
                "repoId": repo_id,
                "issueDescription": "crash",
                "goodCommit": hashes[0],
                "badCommit": hashes[9],
            },
        )

    assert response.status_code == 500
    assert response.json()["detail"] == "OpenAI API key not configured"


def test_dev_server_endpoints_without_running_server():
    with TestClient(web_main.app) as client:
        status = client.get("/api/dev-server/status", params={"repoId": "abc123"})
        proxied = client.get("/api/dev-server/proxy/abc123/index.html")
        query_form = client.get("/api/dev-server/proxy", params={"repoId": "abc123", "path": "/"})
        stopped = client.delete("/api/dev-server/start", params={"repoId": "abc123"})

    assert status.json() == {"running": False}
    assert proxied.status_code == 404
    assert proxied.json()["detail"] == "Dev server not running. Start it first."
    assert query_form.status_code == 404
    assert stopped.status_code == 404


def test_stopping_dev_server_of_registered_repo_without_server(linear_repo):
    source, _ = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        stopped = client.delete("/api/dev-server/start", params={"repoId": repo_id})
        system = client.get("/api/system")

    assert stopped.status_code == 200
    assert stopped.json() == {"success": True, "stopped": False}
    assert system.json()["repos"] == [repo_id]


def test_launch_during_active_bisect_is_conflict(linear_repo):
    source, hashes = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        client.post(
            "/api/bisect/start",
            json={"repoId": repo_id, "goodCommit": hashes[0], "badCommit": hashes[9]},
        )
        response = client.post("/api/bisect/launch", json={"repoId": repo_id, "commitHash": hashes[3]})

    assert response.status_code == 409
    assert response.json()["suggestion"]


def test_busy_repository_returns_conflict(linear_repo):
    source, hashes = linear_repo
    with TestClient(web_main.app) as client:
        repo_id = _register(client, source)
        web_main._cfg_set(WebPersistentConfig(lock_wait_sec=0))
        lock = repo_store._lock_for(repo_id)
        lock.acquire()
        try:
            response = client.post(
                "/api/bisect/start",
                json={"repoId": repo_id, "goodCommit": hashes[0], "badCommit": hashes[9]},
            )
        finally:
            lock.release()

    assert response.status_code == 409
