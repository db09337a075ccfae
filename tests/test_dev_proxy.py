from __future__ import annotations

import socket
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "bisect_console" / "src" / "bisect_agent"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import dev_proxy
from errors import DevServerUnreachableError


PAGE = (
    "<html><head><title>app</title>"
    '<link rel="stylesheet" href="/assets/app.css">'
    "</head><body>"
    '<img src="/static/logo.png">'
    '<script type="module" src="/_next/static/main.js"></script>'
    '<a href="/about">about</a>'
    "</body></html>"
)


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        return

    def do_GET(self):
        if self.path.startswith("/missing"):
            body = b"nope"
            self.send_response(404)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
            return
        if self.path.startswith("/echo"):
            body = f"{self.path}|{self.headers.get('X-Trace', '')}".encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
            return
        body = PAGE.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.send_header("Set-Cookie", "session=abc; Path=/")
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length)
        self.send_response(201)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture
def upstream():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_rewrite_html_points_assets_through_proxy():
    base = dev_proxy.proxy_base("r1")
    out = dev_proxy.rewrite_html(PAGE, base)

    assert f'<base href="{base}/">' in out
    assert f'href="{base}/assets/app.css"' in out
    assert f'src="{base}/static/logo.png"' in out
    assert f'src="{base}/_next/static/main.js"' in out
    assert 'href="/about"' in out


def test_rewrite_html_leaves_existing_base_and_proxied_urls():
    base = dev_proxy.proxy_base("r1")
    html = f'<html><head><base href="/x/"></head><body><img src="{base}/static/a.png"></body></html>'

    out = dev_proxy.rewrite_html(html, base)

    assert out.count("<base") == 1
    assert f"{base}{base}" not in out


def test_forward_rewrites_html_and_drops_hop_headers(upstream):
    resp = dev_proxy.forward(repo_id="r1", port=upstream, method="GET", path="/")

    assert resp.status == 200
    text = resp.body.decode("utf-8")
    assert '<base href="/api/dev-server/proxy/r1/">' in text
    names = {k.lower() for k, _ in resp.headers}
    assert "content-length" not in names
    assert "connection" not in names
    assert ("Set-Cookie", "session=abc; Path=/") in resp.headers


def test_forward_passes_query_and_headers(upstream):
    resp = dev_proxy.forward(
        repo_id="r1",
        port=upstream,
        method="GET",
        path="echo",
        query="a=1&b=2",
        headers={"X-Trace": "t-1", "Host": "ignored.example"},
    )

    assert resp.status == 200
    assert resp.body == b"/echo?a=1&b=2|t-1"


def test_forward_relays_upstream_errors_and_bodies(upstream):
    missing = dev_proxy.forward(repo_id="r1", port=upstream, method="GET", path="/missing")
    assert missing.status == 404
    assert missing.body == b"nope"

    posted = dev_proxy.forward(
        repo_id="r1",
        port=upstream,
        method="POST",
        path="/api/items",
        headers=[("Content-Type", "application/json")],
        body=b'{"x": 1}',
    )
    assert posted.status == 201
    assert posted.body == b'{"x": 1}'


def test_forward_to_closed_port_is_unreachable():
    port = _closed_port()

    with pytest.raises(DevServerUnreachableError) as excinfo:
        dev_proxy.forward(repo_id="r1", port=port, method="GET", path="/", timeout=2)

    assert str(port) in excinfo.value.message
    assert excinfo.value.status_code == 503
    assert excinfo.value.suggestion
