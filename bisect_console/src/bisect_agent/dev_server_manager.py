"""Dev server process registry.

One helper process per repository handle serves the project's own application
so it can be tried out at the commit under test. Records live in a shared
SQLite file (:mod:`server_store`) so any worker can find a server started by
another one; every read re-checks that the recorded pid is still alive and
drops the record otherwise.

Readiness is detected two ways at once: a reader thread scans the child's
output for the usual "ready" banners while the caller polls the port with
short HEAD requests. Whichever fires first wins. A server that stays quiet past
the ready timeout is still handed out after a grace period as long as the
process is alive.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import socket
import subprocess
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

from dotenv import dotenv_values

from errors import DevServerStartError
from persistent_config import WebPersistentConfig
from server_store import SQLiteServerStore

LOGGER = logging.getLogger(__name__)

APP_NEXTJS = "nextjs"
APP_VITE = "vite"
APP_REACT = "react"
APP_UNKNOWN = "unknown"

# Later files override earlier ones.
ENV_FILES = (".env", ".env.local", ".env.development", ".env.development.local")

READY_MARKERS = ("ready", "Local:", "compiled", "started server")

_PORT_CHECK_TIMEOUT_SEC = 2.0
_POLL_INTERVAL_SEC = 1.0
_OUTPUT_TAIL_LINES = 200


@dataclass
class LaunchSpec:
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class DevServerRecord:
    repo_id: str
    repo_dir: str
    port: int
    pid: int
    app_type: str
    started_at: float
    # Kernel start time of the process (clock ticks since boot); None where unknown.
    proc_start: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DevServerRecord":
        return cls(
            repo_id=str(data.get("repo_id") or ""),
            repo_dir=str(data.get("repo_dir") or ""),
            port=int(data.get("port") or 0),
            pid=int(data.get("pid") or 0),
            app_type=str(data.get("app_type") or APP_UNKNOWN),
            started_at=float(data.get("started_at") or 0.0),
            proc_start=int(data["proc_start"]) if data.get("proc_start") is not None else None,
        )


def _read_package_json(repo_dir: Path) -> dict[str, Any] | None:
    path = Path(repo_dir) / "package.json"
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except (OSError, json.JSONDecodeError) as e:
        LOGGER.warning("[dev-server] cannot read %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def detect_app_type(repo_dir: Path) -> str:
    pkg = _read_package_json(repo_dir)
    if pkg is None:
        return APP_UNKNOWN
    deps: dict[str, Any] = {}
    for key in ("dependencies", "devDependencies"):
        section = pkg.get(key)
        if isinstance(section, dict):
            deps.update(section)
    if "next" in deps:
        return APP_NEXTJS
    if "vite" in deps:
        return APP_VITE
    if "react" in deps or "react-dom" in deps:
        return APP_REACT
    return APP_UNKNOWN


def resolve_start_command(repo_dir: Path, app_type: str) -> LaunchSpec | None:
    pkg = _read_package_json(repo_dir) or {}
    scripts = pkg.get("scripts") if isinstance(pkg.get("scripts"), dict) else {}

    if app_type == APP_REACT and scripts.get("start"):
        return LaunchSpec(argv=["npm", "start"], env={"BROWSER": "none"})
    if scripts.get("dev"):
        return LaunchSpec(argv=["npm", "run", "dev"])
    if app_type == APP_NEXTJS:
        return LaunchSpec(argv=["npx", "next", "dev"])
    if app_type == APP_VITE:
        return LaunchSpec(argv=["npx", "vite"])
    return None


def _with_port(spec: LaunchSpec, app_type: str, port: int) -> list[str]:
    argv = list(spec.argv)
    if argv[:2] == ["npx", "next"]:
        return [*argv, "-p", str(port)]
    if argv[:2] == ["npx", "vite"]:
        return [*argv, "--port", str(port), "--strictPort"]
    if argv[:3] == ["npm", "run", "dev"] and app_type in (APP_NEXTJS, APP_VITE):
        return [*argv, "--", "--port", str(port)]
    return argv


def detect_package_manager(repo_dir: Path) -> str:
    """The ``packageManager`` field of package.json wins over lock files."""
    repo_dir = Path(repo_dir)
    declared = str((_read_package_json(repo_dir) or {}).get("packageManager") or "").strip()
    for name in ("pnpm", "yarn", "npm"):
        if declared.startswith(name):
            return name
    if (repo_dir / "pnpm-lock.yaml").is_file():
        return "pnpm"
    if (repo_dir / "yarn.lock").is_file():
        return "yarn"
    return "npm"


def install_dependencies(repo_dir: Path, *, timeout: int = 60) -> bool:
    """Best-effort dependency install; failures are logged, never raised."""
    repo_dir = Path(repo_dir)
    if not (repo_dir / "package.json").is_file():
        return False
    manager = detect_package_manager(repo_dir)
    cmd = [manager, "install"]
    if manager == "npm":
        cmd.append("--force")
    exe = shutil.which(cmd[0])
    if exe is None:
        LOGGER.warning("[dev-server] %s not found; skipping install in %s", manager, repo_dir)
        return False
    LOGGER.info("[dev-server] %s (cwd=%s)", " ".join(cmd), repo_dir)
    try:
        res = subprocess.run(
            [exe, *cmd[1:]],
            cwd=str(repo_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        LOGGER.warning("[dev-server] install timed out after %ss in %s", timeout, repo_dir)
        return False
    except OSError as e:
        LOGGER.warning("[dev-server] install failed in %s: %s", repo_dir, e)
        return False
    if res.returncode != 0:
        tail = "\n".join((res.stdout or "").splitlines()[-20:])
        LOGGER.warning("[dev-server] install exited %s in %s:\n%s", res.returncode, repo_dir, tail)
        return False
    return True


def load_env_files(repo_dir: Path) -> dict[str, str]:
    env: dict[str, str] = {}
    for name in ENV_FILES:
        path = Path(repo_dir) / name
        if not path.is_file():
            continue
        try:
            values = dotenv_values(path)
        except (OSError, UnicodeDecodeError) as e:
            LOGGER.warning("[dev-server] could not read %s: %s", path, e)
            continue
        env.update({k: v for k, v in values.items() if v is not None})
    return env


def build_child_env(
    *,
    base_env: Mapping[str, str],
    repo_env: Mapping[str, str] | None = None,
    extra_env: Mapping[str, str] | None = None,
    framework_env: Mapping[str, str] | None = None,
    port: int,
) -> dict[str, str]:
    env = dict(base_env)
    env.update(repo_env or {})
    env.update({str(k): str(v) for k, v in (extra_env or {}).items()})
    env.update(framework_env or {})
    env["PORT"] = str(port)
    return env


def _port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("", port))
        except OSError:
            return False
    return True


def find_free_port(start: int, end: int, *, exclude: set[int] | None = None) -> int:
    exclude = exclude or set()
    for port in range(int(start), int(end) + 1):
        if port in exclude:
            continue
        if _port_is_free(port):
            return port
    raise DevServerStartError(f"No free port available in range {start}-{end}")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def port_answers(port: int, *, timeout: float = _PORT_CHECK_TIMEOUT_SEC) -> bool:
    """True when something on the port answers HEAD with a status below 500."""
    req = urllib.request.Request(f"http://127.0.0.1:{port}/", method="HEAD")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return int(resp.status) < 500
    except urllib.error.HTTPError as e:
        return int(e.code) < 500
    except (urllib.error.URLError, OSError, ValueError):
        return False


def process_start_ticks(pid: int) -> int | None:
    """Start time of ``pid`` from ``/proc``; None off Linux or when it is gone."""
    try:
        raw = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    # comm (field 2) may contain spaces; starttime is field 22.
    fields = raw[raw.rfind(")") + 2:].split()
    try:
        return int(fields[19])
    except (IndexError, ValueError):
        return None


def record_alive(record: DevServerRecord) -> bool:
    """True when the recorded pid is still the session leader that was started.

    Servers are spawned in their own session, so a pid that is alive but no
    longer leads its own process group has been reused by something else.
    """
    if not pid_alive(record.pid):
        return False
    try:
        if os.getpgid(record.pid) != record.pid:
            return False
    except (ProcessLookupError, PermissionError):
        return False
    if record.proc_start is not None:
        current = process_start_ticks(record.pid)
        if current is not None and current != record.proc_start:
            return False
    return True


def _signal_group(pid: int, sig: int, proc: subprocess.Popen | None = None) -> None:
    try:
        os.killpg(pid, sig)
        return
    except (ProcessLookupError, PermissionError) as e:
        if proc is None:
            LOGGER.debug("[dev-server] cannot signal group %s: %s", pid, e)
            return
    # Only a child this worker spawned may be signalled directly.
    if proc.poll() is None:
        proc.send_signal(sig)


class _Running:
    """A process this worker spawned, plus its output pump."""

    def __init__(self, record: DevServerRecord, proc: subprocess.Popen) -> None:
        self.record = record
        self.proc = proc
        self.ready = threading.Event()
        self.tail: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
        self.markers = (*READY_MARKERS, f"localhost:{record.port}")

    def output_tail(self, lines: int = 30) -> str:
        return "".join(list(self.tail)[-lines:])


class DevServerRegistry:
    def __init__(self, store: SQLiteServerStore, cfg: WebPersistentConfig) -> None:
        self.store = store
        self.cfg = cfg
        self._running: dict[str, _Running] = {}
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, repo_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(repo_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[repo_id] = lock
            return lock

    # ------------------------------------------------------------------ lookup

    def lookup(self, repo_id: str) -> DevServerRecord | None:
        with self._guard:
            running = self._running.get(repo_id)
        if running is not None:
            if running.proc.poll() is None:
                return running.record
            with self._guard:
                if self._running.get(repo_id) is running:
                    self._running.pop(repo_id, None)
            self.store.delete_server(repo_id, pid=running.record.pid)
            return None

        raw = self.store.load_server(repo_id)
        if raw is None:
            return None
        record = DevServerRecord.from_dict(raw)
        if record_alive(record):
            return record
        LOGGER.info("[dev-server] dropping stale record for %s (pid %s)", repo_id, record.pid)
        self.store.delete_server(repo_id, pid=record.pid)
        return None

    # -------------------------------------------------------------------- stop

    def stop(self, repo_id: str) -> bool:
        with self._lock_for(repo_id):
            return self._stop_locked(repo_id)

    def _stop_locked(self, repo_id: str) -> bool:
        with self._guard:
            running = self._running.pop(repo_id, None)
        raw = self.store.load_server(repo_id)
        targets: dict[int, tuple[DevServerRecord, subprocess.Popen | None]] = {}
        if running is not None:
            targets[running.record.pid] = (running.record, running.proc)
        if raw is not None:
            record = DevServerRecord.from_dict(raw)
            targets.setdefault(record.pid, (record, None))

        stopped = False
        try:
            for record, proc in targets.values():
                if self._terminate(record, proc):
                    stopped = True
        finally:
            self.store.delete_server(repo_id)
        if stopped:
            LOGGER.info("[dev-server] stopped server for %s", repo_id)
        return stopped

    def _terminate(self, record: DevServerRecord, proc: subprocess.Popen | None) -> bool:
        pid = record.pid
        alive = proc.poll() is None if proc is not None else record_alive(record)
        if not alive:
            return False
        grace = max(0.0, float(self.cfg.dev_server_stop_grace_sec))
        _signal_group(pid, signal.SIGTERM, proc)
        if proc is not None:
            try:
                proc.wait(timeout=grace)
                return True
            except subprocess.TimeoutExpired:
                pass
        else:
            deadline = time.monotonic() + grace
            while time.monotonic() < deadline:
                if not pid_alive(pid):
                    return True
                time.sleep(0.1)
        LOGGER.warning("[dev-server] pid %s ignored SIGTERM; killing", pid)
        _signal_group(pid, signal.SIGKILL, proc)
        if proc is not None:
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                LOGGER.warning("[dev-server] pid %s still alive after SIGKILL", pid)
        return True

    def forget(self, repo_id: str) -> None:
        """Drop the per-handle lock of a repository that no longer exists."""
        with self._guard:
            if repo_id not in self._running:
                self._locks.pop(repo_id, None)

    def stop_all(self) -> None:
        with self._guard:
            repo_ids = list(self._running)
        for repo_id in repo_ids:
            self.stop(repo_id)

    # ------------------------------------------------------------------- start

    def start(
        self,
        repo_id: str,
        repo_dir: Path,
        extra_env: Mapping[str, str] | None = None,
        *,
        launch: LaunchSpec | None = None,
        install: bool | None = None,
    ) -> DevServerRecord:
        with self._lock_for(repo_id):
            self._stop_locked(repo_id)
            return self._start_locked(repo_id, Path(repo_dir), extra_env, launch, install)

    def _start_locked(
        self,
        repo_id: str,
        repo_dir: Path,
        extra_env: Mapping[str, str] | None,
        launch: LaunchSpec | None,
        install: bool | None,
    ) -> DevServerRecord:
        cfg = self.cfg
        app_type = detect_app_type(repo_dir)
        if launch is None:
            if app_type == APP_UNKNOWN:
                raise DevServerStartError(
                    "Could not detect app type. Supported types: Next.js, Vite, React",
                    suggestion="Make sure the repository has a package.json at its root.",
                )
            launch = resolve_start_command(repo_dir, app_type)
            if launch is None:
                raise DevServerStartError(
                    "Could not determine how to start the dev server",
                    suggestion='Add a "dev" script to package.json.',
                )
            if cfg.dev_server_install if install is None else install:
                install_dependencies(repo_dir, timeout=cfg.dev_server_install_timeout_sec)

        in_use = {int(r.get("port") or 0) for r in self.store.load_servers().values()}
        port = find_free_port(cfg.dev_server_port_start, cfg.dev_server_port_end, exclude=in_use)
        env = build_child_env(
            base_env=os.environ,
            repo_env=load_env_files(repo_dir),
            extra_env=extra_env,
            framework_env=launch.env,
            port=port,
        )
        argv = _with_port(launch, app_type, port)
        exe = shutil.which(argv[0], path=env.get("PATH")) or argv[0]

        LOGGER.info("[dev-server] starting %s on port %s for %s", " ".join(argv), port, repo_id)
        try:
            proc = subprocess.Popen(
                [exe, *argv[1:]],
                cwd=str(repo_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise DevServerStartError(f"Failed to start dev server: {e}") from e

        record = DevServerRecord(
            repo_id=repo_id,
            repo_dir=str(repo_dir),
            port=port,
            pid=proc.pid,
            app_type=app_type,
            started_at=time.time(),
            proc_start=process_start_ticks(proc.pid),
        )
        running = _Running(record, proc)
        with self._guard:
            self._running[repo_id] = running
        self.store.upsert_server(record.as_dict())
        threading.Thread(target=self._pump, args=(running,), daemon=True).start()

        try:
            self._wait_ready(running)
        except DevServerStartError:
            self._stop_locked(repo_id)
            raise
        return record

    def _pump(self, running: _Running) -> None:
        proc = running.proc
        try:
            if proc.stdout is not None:
                for line in proc.stdout:
                    running.tail.append(line)
                    LOGGER.debug("[dev-server %s] %s", running.record.repo_id, line.rstrip())
                    if not running.ready.is_set() and any(m in line for m in running.markers):
                        running.ready.set()
        except (OSError, ValueError) as e:
            LOGGER.debug("[dev-server %s] output reader stopped: %s", running.record.repo_id, e)
        finally:
            rc = proc.wait()
            repo_id = running.record.repo_id
            LOGGER.info("[dev-server] %s exited with %s", repo_id, rc)
            with self._guard:
                if self._running.get(repo_id) is running:
                    self._running.pop(repo_id, None)
            self.store.delete_server(repo_id, pid=running.record.pid)

    def _wait_ready(self, running: _Running) -> None:
        cfg = self.cfg
        port = running.record.port
        deadline = time.monotonic() + max(0, int(cfg.dev_server_ready_timeout_sec))

        while True:
            if running.ready.is_set():
                LOGGER.info("[dev-server] ready marker seen on port %s", port)
                return
            if running.proc.poll() is not None:
                raise DevServerStartError(
                    f"Dev server exited with code {running.proc.returncode} before becoming ready.\n"
                    f"{running.output_tail()}".rstrip()
                )
            if port_answers(port):
                LOGGER.info("[dev-server] port %s answers; ready", port)
                return
            if time.monotonic() >= deadline:
                break
            running.ready.wait(_POLL_INTERVAL_SEC)

        LOGGER.warning(
            "[dev-server] no ready signal on port %s after %ss; waiting %ss more",
            port, cfg.dev_server_ready_timeout_sec, cfg.dev_server_ready_grace_sec,
        )
        running.ready.wait(max(0, int(cfg.dev_server_ready_grace_sec)))
        if running.proc.poll() is not None:
            raise DevServerStartError(
                f"Dev server exited with code {running.proc.returncode} before becoming ready.\n"
                f"{running.output_tail()}".rstrip()
            )
