from __future__ import annotations

import codecs
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from errors import BisectWebError, DevServerUnreachableError

LOGGER = logging.getLogger(__name__)

PROXY_PREFIX = "/api/dev-server/proxy"

# Not forwarded upstream. accept-encoding is dropped so the body comes back
# uncompressed and can be rewritten.
_SKIP_REQUEST_HEADERS = {"host", "content-length", "connection", "accept-encoding", "transfer-encoding"}
_SKIP_RESPONSE_HEADERS = {"content-encoding", "transfer-encoding", "content-length", "connection"}

_ASSET_ATTR_RE = re.compile(
    r"""(src|href)=["'](/(?:_next|static|assets|favicon\.ico|logo\.svg)[^"']*)["']""",
    re.IGNORECASE,
)
_SCRIPT_RE = re.compile(
    r"""<script([^>]*src=["'])(/(?:_next|static|assets)[^"']*)(["'][^>]*)>""",
    re.IGNORECASE,
)
_LINK_RE = re.compile(
    r"""<link([^>]*href=["'])(/(?:_next|static|assets|favicon\.ico|logo\.svg)[^"']*)(["'][^>]*)>""",
    re.IGNORECASE,
)
_HEAD_RE = re.compile(r"<head([^>]*)>", re.IGNORECASE)
_CHARSET_RE = re.compile(r"charset=([\w-]+)", re.IGNORECASE)


@dataclass
class ProxyResponse:
    status: int
    body: bytes
    headers: list[tuple[str, str]] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        for k, v in self.headers:
            if k.lower() == "content-type":
                return v
        return ""


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


_OPENER = urllib.request.build_opener(_NoRedirect)


def proxy_base(repo_id: str) -> str:
    return f"{PROXY_PREFIX}/{repo_id}"


def rewrite_html(html: str, base: str) -> str:
    """Point absolute asset paths of a proxied page back through the proxy."""
    if "<base" not in html:
        html = _HEAD_RE.sub(lambda m: f'<head{m.group(1)}><base href="{base}/">', html, count=1)

    def _attr(m: re.Match) -> str:
        url = m.group(2)
        if url.startswith(PROXY_PREFIX):
            return m.group(0)
        return f'{m.group(1)}="{base}{url}"'

    def _tag(tag: str):
        def _sub(m: re.Match) -> str:
            url = m.group(2)
            if url.startswith(PROXY_PREFIX):
                return m.group(0)
            return f"<{tag}{m.group(1)}{base}{url}{m.group(3)}>"
        return _sub

    html = _ASSET_ATTR_RE.sub(_attr, html)
    html = _SCRIPT_RE.sub(_tag("script"), html)
    html = _LINK_RE.sub(_tag("link"), html)
    return html


def _charset(content_type: str) -> str:
    m = _CHARSET_RE.search(content_type or "")
    if not m:
        return "utf-8"
    try:
        return codecs.lookup(m.group(1)).name
    except LookupError:
        return "utf-8"


def _filtered(headers: Iterable[tuple[str, str]], skip: set[str]) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in skip]


def forward(
    *,
    repo_id: str,
    port: int,
    method: str,
    path: str,
    query: str = "",
    headers: Mapping[str, str] | Iterable[tuple[str, str]] = (),
    body: bytes | None = None,
    timeout: float = 10.0,
) -> ProxyResponse:
    path = "/" + (path or "").lstrip("/")
    url = f"http://localhost:{port}{path}"
    if query:
        url = f"{url}?{query}"
    items = headers.items() if isinstance(headers, Mapping) else headers
    method = (method or "GET").upper()
    data = body if method not in ("GET", "HEAD") and body else None

    req = urllib.request.Request(url, data=data, method=method)
    for k, v in _filtered(items, _SKIP_REQUEST_HEADERS):
        req.add_header(k, v)

    try:
        with _OPENER.open(req, timeout=timeout) as resp:
            status = int(resp.status)
            raw = resp.read()
            resp_headers = list(resp.headers.items())
    except urllib.error.HTTPError as e:
        status = int(e.code)
        raw = e.read() if e.fp is not None else b""
        resp_headers = list(e.headers.items()) if e.headers is not None else []
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
        LOGGER.warning("[proxy] %s %s -> port %s failed: %s", method, path, port, e)
        raise DevServerUnreachableError(
            f"Failed to connect to dev server on port {port}. The dev server may have stopped.",
            suggestion="Try restarting the dev server.",
        ) from e
    except OSError as e:
        raise BisectWebError(f"Failed to proxy request: {e}") from e

    out = ProxyResponse(status=status, body=raw, headers=_filtered(resp_headers, _SKIP_RESPONSE_HEADERS))
    if "text/html" in out.content_type.lower():
        charset = _charset(out.content_type)
        text = raw.decode(charset, errors="replace")
        out.body = rewrite_html(text, proxy_base(repo_id)).encode(charset, errors="replace")
    if not out.content_type:
        out.headers.append(("content-type", "text/html"))
    return out
