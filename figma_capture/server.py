"""Static file responder serving the page under capture."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from filetype import guess

from .config import ServerConfig
from .errors import ConfigError

logger = logging.getLogger("figma_capture.server")

MIME_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".htm": "text/html; charset=utf-8",
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".mjs": "application/javascript; charset=utf-8",
    ".json": "application/json; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
}
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class AssetResponse:
    status: int
    body: bytes
    content_type: str = "text/plain; charset=utf-8"


def content_type_for(path: Path, data: bytes) -> str:
    """Look the extension up, then sniff the file signature."""
    known = MIME_TYPES.get(path.suffix.lower())
    if known:
        return known
    kind = guess(data)
    if kind:
        return kind.mime
    return DEFAULT_MIME_TYPE


def resolve_asset(root: Path, request_path: str) -> AssetResponse:
    """Map a request path under ``root`` to a response; never leaves ``root``."""
    path = unquote(request_path.split("?", 1)[0].split("#", 1)[0]) or "/"
    if path == "/":
        path = "/index.html"
    try:
        root = root.resolve()
        target = (root / ("." + path)).resolve()
        if not target.is_relative_to(root):
            return AssetResponse(403, b"Forbidden")
        if not target.is_file():
            return AssetResponse(404, b"Not Found")
        data = target.read_bytes()
    except (OSError, ValueError):
        logger.exception("Failed to serve %s", request_path)
        return AssetResponse(500, b"Internal Server Error")
    return AssetResponse(200, data, content_type_for(target, data))


class StaticFileHandler(BaseHTTPRequestHandler):
    """GET-only handler bound to a single root directory."""

    def __init__(self, *args, root: Path, **kwargs) -> None:
        self.root = root
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:  # noqa: N802
        response = resolve_asset(self.root, self.path)
        self.send_response(response.status)
        self.send_header("Content-Type", response.content_type)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        self.wfile.write(response.body)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class StaticFileServer:
    """Serve one directory over plain HTTP on a background thread."""

    def __init__(self, config: ServerConfig, host: str = "localhost") -> None:
        directory = Path(config.directory)
        if not directory.is_absolute():
            raise ValueError(f"Server root must be an absolute path: {directory}")
        if not directory.is_dir():
            raise ValueError(f"Server root is not a directory: {directory}")
        self.root = directory.resolve()
        self.host = host
        self.requested_port = config.port
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._httpd is None:
            return self.requested_port
        return self._httpd.server_address[1]

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._httpd is not None

    def start(self) -> int:
        if self._httpd is not None:
            return self.port
        handler = partial(StaticFileHandler, root=self.root)
        try:
            httpd = ThreadingHTTPServer((self.host, self.requested_port), handler)
        except OSError as exc:
            raise ConfigError(f"Port {self.requested_port} unavailable: {exc}") from exc
        httpd.daemon_threads = True
        self._httpd = httpd
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name="figma-capture-static",
            daemon=True,
        )
        self._thread.start()
        logger.info("Serving %s at %s", self.root, self.url)
        return self.port

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._httpd = None
        self._thread = None
        logger.info("Stopped static server for %s", self.root)
