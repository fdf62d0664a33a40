from datetime import timedelta

import httpx
import pytest
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, ErrorData, TextContent

from figma_capture.client import FigmaCaptureClient, is_authorization_error, response_text
from figma_capture.config import ClientConfig
from figma_capture.errors import (
    AuthorizationError,
    ConfigError,
    RemoteConnectionError,
    RemoteToolError,
)
from figma_capture.models import CaptureRequest, CaptureStatus

MCP_URL = "https://mcp.figma.com/mcp"


def _status_error(status):
    request = httpx.Request("POST", MCP_URL)
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _result(text, is_error=False):
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.timeouts = []

    async def call_tool(self, name, arguments, read_timeout_seconds=None):
        self.calls.append((name, arguments))
        self.timeouts.append(read_timeout_seconds)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _connected_client(*responses, **config):
    config.setdefault("access_token", "figd_token")
    client = FigmaCaptureClient(ClientConfig(**config))
    session = FakeSession(*responses)
    client._session = session
    return client, session


def test_authorization_error_found_in_exception_groups():
    wrapped = ExceptionGroup("transport", [ValueError("x"), _status_error(401)])
    assert is_authorization_error(wrapped)
    assert not is_authorization_error(ExceptionGroup("transport", [_status_error(500)]))

    try:
        try:
            raise _status_error(403)
        except httpx.HTTPStatusError as exc:
            raise RuntimeError("session closed") from exc
    except RuntimeError as chained:
        assert is_authorization_error(chained)


def test_response_text_joins_text_blocks_and_falls_back_to_structured():
    result = CallToolResult(
        content=[TextContent(type="text", text="one"), TextContent(type="text", text="two")]
    )
    assert response_text(result) == "one\ntwo"
    structured = CallToolResult(content=[], structuredContent={"captureId": "abc-1"})
    assert response_text(structured) == '{"captureId": "abc-1"}'


@pytest.mark.asyncio
async def test_initiate_capture_sends_arguments_and_extracts_id():
    client, session = _connected_client(_result("Capture ID: abc-123 created"))
    request = CaptureRequest(output_mode="newFile", file_name="Landing", team_id="42")

    result = await client.initiate_capture(request)

    assert result.capture_id == "abc-123"
    assert result.status is CaptureStatus.PENDING
    assert session.calls == [
        (
            "generate_figma_design",
            {"outputMode": "newFile", "fileName": "Landing", "planKey": "team::42"},
        )
    ]


@pytest.mark.asyncio
async def test_initiate_capture_without_id_returns_empty():
    client, _ = _connected_client(_result("Something unexpected"))
    result = await client.initiate_capture(CaptureRequest())
    assert result.capture_id == ""


@pytest.mark.asyncio
async def test_poll_capture_carries_capture_id_and_classifies():
    client, session = _connected_client(
        _result("still working"),
        _result("Done! https://www.figma.com/design/XYZ/Landing."),
    )
    request = CaptureRequest()

    pending = await client.poll_capture(request, "abc-123")
    completed = await client.poll_capture(request, "abc-123")

    assert pending.status is CaptureStatus.PENDING
    assert completed.status is CaptureStatus.COMPLETED
    assert completed.design_url == "https://www.figma.com/design/XYZ/Landing"
    assert session.calls[0][1] == {"outputMode": "newFile", "captureId": "abc-123"}
    assert session.timeouts == [timedelta(seconds=60.0), timedelta(seconds=60.0)]


@pytest.mark.asyncio
async def test_tool_errors_are_raised_not_classified():
    client, _ = _connected_client(_result("capture failed: bad plan", is_error=True))
    with pytest.raises(RemoteToolError, match="bad plan"):
        await client.poll_capture(CaptureRequest(), "abc-123")

    client, _ = _connected_client(McpError(ErrorData(code=-32602, message="unknown tool")))
    with pytest.raises(RemoteToolError, match="unknown tool"):
        await client.initiate_capture(CaptureRequest())


@pytest.mark.asyncio
async def test_calls_require_connection():
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    with pytest.raises(RuntimeError):
        await client.initiate_capture(CaptureRequest())


@pytest.mark.asyncio
async def test_connect_validates_before_opening(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(auth_mode="token"))
    opened = []

    async def fake_open(mode):
        opened.append(mode)

    monkeypatch.setattr(client, "_open", fake_open)
    with pytest.raises(ConfigError):
        await client.connect()
    assert opened == []


def _scripted_open(client, outcomes):
    attempts = []

    async def fake_open(mode):
        attempts.append(mode)
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome
        client._session = object()
        client.active_auth_mode = mode

    return attempts, fake_open


@pytest.mark.asyncio
async def test_rejected_token_falls_back_to_oauth_once(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(access_token="figd_expired"))
    attempts, fake_open = _scripted_open(client, [_status_error(401), None])
    monkeypatch.setattr(client, "_open", fake_open)

    await client.connect()

    assert attempts == ["token", "oauth"]
    assert client.active_auth_mode == "oauth"


@pytest.mark.asyncio
async def test_second_rejection_is_fatal(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(access_token="figd_expired"))
    attempts, fake_open = _scripted_open(client, [_status_error(401), _status_error(401)])
    monkeypatch.setattr(client, "_open", fake_open)

    with pytest.raises(AuthorizationError, match="OAuth"):
        await client.connect()
    assert attempts == ["token", "oauth"]


@pytest.mark.asyncio
async def test_non_authorization_errors_are_not_retried(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    attempts, fake_open = _scripted_open(client, [httpx.ConnectError("offline")])
    monkeypatch.setattr(client, "_open", fake_open)

    with pytest.raises(RemoteConnectionError, match="offline") as excinfo:
        await client.connect()
    assert attempts == ["token"]
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_connection_errors_inside_exception_groups(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    group = ExceptionGroup("transport", [httpx.ConnectError("refused")])
    _, fake_open = _scripted_open(client, [group])
    monkeypatch.setattr(client, "_open", fake_open)

    with pytest.raises(RemoteConnectionError, match="refused"):
        await client.connect()


@pytest.mark.asyncio
async def test_unrecognised_errors_propagate(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    _, fake_open = _scripted_open(client, [ValueError("bad handshake")])
    monkeypatch.setattr(client, "_open", fake_open)

    with pytest.raises(ValueError):
        await client.connect()


@pytest.mark.asyncio
async def test_oauth_mode_rejection_has_no_fallback(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(auth_mode="oauth"))
    attempts, fake_open = _scripted_open(client, [_status_error(401)])
    monkeypatch.setattr(client, "_open", fake_open)

    with pytest.raises(AuthorizationError):
        await client.connect()
    assert attempts == ["oauth"]


@pytest.mark.asyncio
async def test_response_hook_tracks_rejections():
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    request = httpx.Request("POST", MCP_URL)

    await client._observe_response(httpx.Response(401, request=request))
    assert client._rejected
    await client._observe_response(
        httpx.Response(404, request=httpx.Request("GET", "https://mcp.figma.com/.well-known/x"))
    )
    assert client._rejected
    await client._observe_response(httpx.Response(200, request=request))
    assert not client._rejected


def test_capture_endpoint_uses_template():
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    assert client.capture_endpoint("abc") == "https://mcp.figma.com/mcp/capture/abc"


@pytest.mark.asyncio
async def test_close_is_idempotent():
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    await client.close()
    await client.close()
    assert not client.connected


@pytest.mark.asyncio
async def test_oauth_mode_tool_calls_keep_a_read_deadline():
    client, session = _connected_client(
        _result("still working"), auth_mode="oauth", request_timeout=12.0
    )
    await client.poll_capture(CaptureRequest(), "abc-123")
    assert session.timeouts == [timedelta(seconds=12.0)]


@pytest.mark.asyncio
async def test_handshake_protocol_errors_are_connection_errors(monkeypatch):
    client = FigmaCaptureClient(ClientConfig(access_token="figd_token"))
    timeout = McpError(ErrorData(code=408, message="Timed out while waiting for response"))
    _, fake_open = _scripted_open(client, [timeout])
    monkeypatch.setattr(client, "_open", fake_open)

    with pytest.raises(RemoteConnectionError, match="Timed out"):
        await client.connect()
