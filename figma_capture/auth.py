"""Credential strategies: bearer tokens and the OAuth authorization-code flow."""

from __future__ import annotations

import asyncio
import html
import logging
import threading
from functools import partial
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Generator, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx
from mcp.client.auth import OAuthClientProvider, TokenStorage
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken
from pydantic import AnyUrl

from .config import OAUTH_CALLBACK_PATH, OAUTH_CALLBACK_PORT, OAUTH_CLIENT_NAME, ClientConfig
from .errors import OAuthCallbackError

logger = logging.getLogger("figma_capture.auth")

DEFAULT_GRACE_PERIOD = 0.5

_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h1>{title}</h1><p>{message}</p></body></html>
"""


class BearerTokenAuth(httpx.Auth):
    """Send a personal access token the way the capture service expects it."""

    def __init__(self, token: str) -> None:
        self.token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self.token}"
        request.headers["X-Figma-Token"] = self.token
        yield request


class InMemoryTokenStorage(TokenStorage):
    """Token and client registration storage for a single process run."""

    def __init__(self, client_info: Optional[OAuthClientInformationFull] = None) -> None:
        self.tokens: Optional[OAuthToken] = None
        self.client_info = client_info

    async def get_tokens(self) -> Optional[OAuthToken]:
        return self.tokens

    async def set_tokens(self, tokens: OAuthToken) -> None:
        self.tokens = tokens

    async def get_client_info(self) -> Optional[OAuthClientInformationFull]:
        return self.client_info

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        self.client_info = client_info


def _render_page(title: str, message: str) -> bytes:
    return _PAGE.format(title=html.escape(title), message=html.escape(message)).encode("utf-8")


class _CallbackHandler(BaseHTTPRequestHandler):
    def __init__(self, *args, listener: "OAuthCallbackListener", **kwargs) -> None:
        self.listener = listener
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:  # noqa: N802
        parts = urlsplit(self.path)
        if parts.path == "/favicon.ico":
            self._send(404, b"Not Found", "text/plain; charset=utf-8")
            return
        params = {key: values[0] for key, values in parse_qs(parts.query).items() if values}
        status, body = self.listener.handle_params(params)
        self._send(status, body, "text/html; charset=utf-8")

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("OAuth callback: %s", format % args)


class OAuthCallbackListener:
    """Single-use loopback endpoint that receives the OAuth redirect.

    The first request other than a favicon probe settles the result: a
    ``code`` parameter resolves it, anything else rejects it. The listener is
    torn down once ``wait`` returns or raises.
    """

    def __init__(
        self,
        port: int = OAUTH_CALLBACK_PORT,
        path: str = OAUTH_CALLBACK_PATH,
        host: str = "localhost",
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self.host = host
        self.path = path
        self.requested_port = port
        self.grace_period = grace_period
        self._httpd: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._future: Optional[asyncio.Future] = None
        self._lock = threading.Lock()
        self._settled = False

    @property
    def port(self) -> int:
        if self._httpd is None:
            return self.requested_port
        return self._httpd.server_address[1]

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    def start(self) -> None:
        if self._httpd is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        self._settled = False
        self._httpd = HTTPServer(
            (self.host, self.requested_port), partial(_CallbackHandler, listener=self)
        )
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name="figma-capture-oauth",
            daemon=True,
        )
        self._thread.start()
        logger.debug("OAuth callback listener on %s", self.redirect_uri)

    def handle_params(self, params: dict) -> Tuple[int, bytes]:
        """Settle the pending future from the redirect's query parameters."""
        with self._lock:
            if self._settled:
                return 409, _render_page(
                    "Already handled", "This authorization request was already processed."
                )
            self._settled = True

        code = params.get("code")
        if code:
            self._settle(result=(code, params.get("state")))
            return 200, _render_page(
                "Authorization successful", "You can close this window and return to the terminal."
            )

        if "error" in params:
            message = params["error"]
            if params.get("error_description"):
                message = f"{message}: {params['error_description']}"
        else:
            message = "no authorization code in callback"
        self._settle(error=OAuthCallbackError(f"OAuth authorization failed ({message})"))
        return 400, _render_page("Authorization failed", message)

    def _settle(self, result=None, error: Optional[Exception] = None) -> None:
        if self._loop is None or self._future is None:
            return
        future = self._future

        def apply() -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        self._loop.call_soon_threadsafe(apply)

    async def wait(self) -> Tuple[str, Optional[str]]:
        """Wait for the redirect and return ``(code, state)``."""
        self.start()
        assert self._future is not None
        try:
            return await self._future
        finally:
            if self._settled and self.grace_period:
                await asyncio.sleep(self.grace_period)
            self.close()

    def close(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._httpd = None
        self._thread = None
        logger.debug("OAuth callback listener closed")


def build_client_metadata(config: ClientConfig) -> OAuthClientMetadata:
    return OAuthClientMetadata(
        client_name=OAUTH_CLIENT_NAME,
        redirect_uris=[AnyUrl(config.oauth_redirect_uri)],
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        token_endpoint_auth_method="client_secret_post" if config.oauth_client_secret else "none",
    )


def build_token_storage(
    config: ClientConfig,
    metadata: OAuthClientMetadata,
) -> InMemoryTokenStorage:
    """Seed the storage with a pre-registered client when one is configured."""
    if not config.oauth_client_id:
        return InMemoryTokenStorage()
    client_info = OAuthClientInformationFull(
        **metadata.model_dump(),
        client_id=config.oauth_client_id,
        client_secret=config.oauth_client_secret,
    )
    return InMemoryTokenStorage(client_info)


def build_oauth_provider(
    config: ClientConfig,
    opener: Callable[[str], object],
) -> OAuthClientProvider:
    """Create the SDK auth provider; it owns PKCE and the token exchange."""
    metadata = build_client_metadata(config)
    storage = build_token_storage(config, metadata)

    listener = OAuthCallbackListener(
        port=config.oauth_callback_port,
        path=config.oauth_callback_path,
    )

    async def redirect_handler(authorization_url: str) -> None:
        # Listen before the browser can redirect back.
        listener.start()
        logger.info("Opening browser for Figma authorization")
        logger.info("If it does not open, visit: %s", authorization_url)
        opener(authorization_url)

    async def callback_handler() -> Tuple[str, Optional[str]]:
        return await listener.wait()

    return OAuthClientProvider(
        server_url=config.mcp_url,
        client_metadata=metadata,
        storage=storage,
        redirect_handler=redirect_handler,
        callback_handler=callback_handler,
    )
