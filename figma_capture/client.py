"""MCP client for the remote HTML-to-design capture tool."""

from __future__ import annotations

import json
import logging
import webbrowser
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, Implementation

from .auth import BearerTokenAuth, build_oauth_provider
from .config import CLIENT_VERSION, OAUTH_CLIENT_NAME, ClientConfig
from .errors import AuthorizationError, RemoteConnectionError, RemoteToolError
from .extract import classify_poll_response, extract_capture_id
from .models import CaptureRequest, CaptureResult

logger = logging.getLogger("figma_capture.client")

UNAUTHORIZED_STATUSES = (401, 403)
SSE_READ_TIMEOUT = timedelta(minutes=5)

OAuthProviderFactory = Callable[[ClientConfig, Callable[[str], object]], httpx.Auth]


def _iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    pending: List[BaseException] = [exc]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.extend(getattr(current, "exceptions", ()))
        if current.__cause__ is not None:
            pending.append(current.__cause__)
        if current.__context__ is not None:
            pending.append(current.__context__)


def is_authorization_error(exc: BaseException) -> bool:
    """True when a 401/403 response is anywhere in the exception chain."""
    for error in _iter_exception_chain(exc):
        if isinstance(error, AuthorizationError):
            return True
        if (
            isinstance(error, httpx.HTTPStatusError)
            and error.response.status_code in UNAUTHORIZED_STATUSES
        ):
            return True
    return False


def _raise_connection_error(url: str, exc: BaseException) -> None:
    """Re-raise transport failures found in ``exc`` as ``RemoteConnectionError``."""
    for error in _iter_exception_chain(exc):
        if isinstance(error, (httpx.HTTPError, OSError, McpError)):
            raise RemoteConnectionError(f"Could not connect to {url}: {error}") from exc


def response_text(result: CallToolResult) -> str:
    """Join the text blocks of a tool result, or serialise its structured content."""
    texts = [
        block.text
        for block in result.content
        if getattr(block, "type", None) == "text" and getattr(block, "text", None)
    ]
    if texts:
        return "\n".join(texts)
    structured = getattr(result, "structuredContent", None)
    if structured:
        return json.dumps(structured)
    return ""


class FigmaCaptureClient:
    """Session with the remote capture service.

    ``connect`` authenticates with the configured mode. When a bearer token is
    rejected, it falls back once to the OAuth authorization-code flow.
    """

    def __init__(
        self,
        config: ClientConfig,
        opener: Callable[[str], object] = webbrowser.open,
        oauth_provider_factory: OAuthProviderFactory = build_oauth_provider,
    ) -> None:
        self.config = config
        self.opener = opener
        self.oauth_provider_factory = oauth_provider_factory
        self.active_auth_mode: Optional[str] = None
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None
        self._rejected = False

    @property
    def connected(self) -> bool:
        return self._session is not None

    def capture_endpoint(self, capture_id: str) -> str:
        return self.config.capture_endpoint_template.format(capture_id=capture_id)

    def _auth_for(self, mode: str) -> Optional[httpx.Auth]:
        if mode == "token":
            return BearerTokenAuth(self.config.access_token or "")
        if mode == "oauth":
            return self.oauth_provider_factory(self.config, self.opener)
        return None

    async def _observe_response(self, response: httpx.Response) -> None:
        if str(response.request.url).startswith(self.config.mcp_url):
            self._rejected = response.status_code in UNAUTHORIZED_STATUSES

    def _http_client_factory(
        self,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[httpx.Timeout] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=headers,
            timeout=timeout or httpx.Timeout(self.config.request_timeout),
            auth=auth,
            follow_redirects=True,
            event_hooks={"response": [self._observe_response]},
        )

    async def _open(self, mode: str) -> None:
        """Open the transport and initialise a session with ``mode`` credentials."""
        self._rejected = False
        # OAuth waits on the user in the browser, so the handshake gets no read
        # deadline. Tool calls pass their own.
        read_timeout = (
            None if mode == "oauth" else timedelta(seconds=self.config.request_timeout)
        )
        stack = AsyncExitStack()
        try:
            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(
                    self.config.mcp_url,
                    timeout=timedelta(seconds=self.config.request_timeout),
                    sse_read_timeout=SSE_READ_TIMEOUT,
                    auth=self._auth_for(mode),
                    httpx_client_factory=self._http_client_factory,
                )
            )
            session = await stack.enter_async_context(
                ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=read_timeout,
                    client_info=Implementation(name=OAUTH_CLIENT_NAME, version=CLIENT_VERSION),
                )
            )
            await session.initialize()
        except BaseException:
            await self._discard(stack)
            raise
        self._stack = stack
        self._session = session
        self.active_auth_mode = mode

    async def _discard(self, stack: AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception:  # pylint: disable=broad-except
            logger.debug("Error while discarding a failed MCP session", exc_info=True)

    def _is_rejection(self, exc: BaseException) -> bool:
        return self._rejected or is_authorization_error(exc)

    async def connect(self) -> None:
        if self._session is not None:
            return
        self.config.validate()
        mode = self.config.auth_mode
        logger.info("Connecting to %s (%s auth)", self.config.mcp_url, mode)
        try:
            await self._open(mode)
        except Exception as exc:
            if not self._is_rejection(exc):
                _raise_connection_error(self.config.mcp_url, exc)
                raise
            if not self.config.oauth_fallback_enabled:
                raise AuthorizationError(
                    f"{self.config.mcp_url} rejected the {mode} credentials"
                ) from exc
            logger.warning("Access token rejected; falling back to OAuth authorization")
            try:
                await self._open("oauth")
            except Exception as retry_exc:
                if self._is_rejection(retry_exc):
                    raise AuthorizationError(
                        f"{self.config.mcp_url} rejected the OAuth credentials"
                    ) from retry_exc
                _raise_connection_error(self.config.mcp_url, retry_exc)
                raise
        logger.info("Connected to %s", self.config.mcp_url)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("Client is not connected; call connect() first")
        return self._session

    async def list_tools(self) -> List[str]:
        result = await self._require_session().list_tools()
        return [tool.name for tool in result.tools]

    async def call_capture_tool(self, arguments: Dict[str, Any]) -> str:
        """Invoke the capture tool and return its response text."""
        session = self._require_session()
        logger.debug("Calling %s with %s", self.config.tool_name, arguments)
        try:
            result = await session.call_tool(
                self.config.tool_name,
                arguments,
                read_timeout_seconds=timedelta(seconds=self.config.request_timeout),
            )
        except McpError as exc:
            raise RemoteToolError(f"{self.config.tool_name} failed: {exc}") from exc
        text = response_text(result)
        if result.isError:
            raise RemoteToolError(
                f"{self.config.tool_name} returned an error: {text or 'no details'}"
            )
        logger.debug("%s responded: %s", self.config.tool_name, text)
        return text

    async def initiate_capture(self, request: CaptureRequest) -> CaptureResult:
        """Start a capture; the identifier is empty when none could be found."""
        text = await self.call_capture_tool(request.to_arguments())
        capture_id = extract_capture_id(text)
        if not capture_id:
            logger.debug("No capture ID in response: %s", text)
        return CaptureResult.pending(capture_id)

    async def poll_capture(self, request: CaptureRequest, capture_id: str) -> CaptureResult:
        text = await self.call_capture_tool(request.to_arguments(capture_id))
        return classify_poll_response(text, capture_id, self.config.design_url_prefix)

    async def close(self) -> None:
        stack = self._stack
        self._stack = None
        self._session = None
        self.active_auth_mode = None
        if stack is not None:
            await stack.aclose()
            logger.debug("Closed MCP session")
