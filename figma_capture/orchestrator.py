"""End-to-end sequencing of one HTML-to-design capture."""

from __future__ import annotations

import asyncio
import logging
import time
import webbrowser
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import quote

from .config import CaptureOptions, ServerConfig
from .errors import (
    CaptureFailedError,
    CaptureTimeoutError,
    HtmlFileNotFoundError,
    MissingCaptureIdError,
)
from .injector import HtmlInjector
from .models import CaptureEvent, CaptureRequest, CaptureResult, CaptureStatus
from .server import StaticFileServer

logger = logging.getLogger("figma_capture")
event_logger = logging.getLogger("figma_capture.events")

EventCallback = Callable[[CaptureEvent], None]
Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], float]


class CaptureClient(Protocol):
    async def connect(self) -> None: ...

    async def initiate_capture(self, request: CaptureRequest) -> CaptureResult: ...

    async def poll_capture(self, request: CaptureRequest, capture_id: str) -> CaptureResult: ...

    def capture_endpoint(self, capture_id: str) -> str: ...

    async def close(self) -> None: ...


def log_event(event: CaptureEvent) -> None:
    """Default event sink: write lifecycle events to the log."""
    level = logging.WARNING if event.kind == "completed_without_url" else logging.INFO
    if event.kind == "poll":
        level = logging.DEBUG
    event_logger.log(level, event.message)


def build_capture_url(server_url: str, file_name: str, capture_id: str, endpoint: str) -> str:
    """URL that loads the served page with the capture parameters in the fragment."""
    return (
        f"{server_url}/{quote(file_name)}"
        f"#figmacapture={capture_id}&figmaendpoint={quote(endpoint, safe='')}"
    )


def build_request(options: CaptureOptions) -> CaptureRequest:
    return CaptureRequest(
        output_mode=options.output_mode,
        file_name=options.file_name,
        team_id=options.team_id,
        url=options.source_url,
    )


async def poll_until_terminal(
    poll: Callable[[], Awaitable[CaptureResult]],
    capture_id: str,
    interval: float,
    timeout: float,
    *,
    on_event: EventCallback = log_event,
    sleep: Sleep = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> CaptureResult:
    """Poll at a fixed interval until the capture completes, fails or times out.

    Raises ``CaptureFailedError`` for a remote failure and
    ``CaptureTimeoutError`` once ``timeout`` seconds have passed since the
    loop started.
    """
    started = clock()
    attempts = 0
    while clock() - started <= timeout:
        await sleep(interval)
        attempts += 1
        message = f"Checking capture status (attempt {attempts})"
        on_event(CaptureEvent("poll", message, {"attempt": attempts}))
        result = await poll()
        if result.status is CaptureStatus.COMPLETED:
            return result
        if result.status is CaptureStatus.FAILED:
            raise CaptureFailedError(capture_id, result.error or "")
    raise CaptureTimeoutError(capture_id, timeout, attempts)


def _resolve_html_path(path: Path) -> Path:
    resolved = Path(path).expanduser().resolve()
    if not resolved.is_file():
        raise HtmlFileNotFoundError(f"HTML file not found: {resolved}")
    return resolved


async def run_capture(
    options: CaptureOptions,
    client: CaptureClient,
    *,
    opener: Callable[[str], object] = webbrowser.open,
    on_event: EventCallback = log_event,
    sleep: Sleep = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> CaptureResult:
    """Serve the page, start a capture, wait for it and open the result."""
    options.validate()
    html_path = _resolve_html_path(options.html_path)
    request = build_request(options)
    server = StaticFileServer(ServerConfig(port=options.port, directory=html_path.parent))
    injector = HtmlInjector(html_path, options.script_url, options.script_marker)

    def emit(kind: str, message: str, **details: Any) -> None:
        on_event(CaptureEvent(kind, message, details))

    def register_cleanup(name: str, step: Callable[[], Awaitable[None]]) -> None:
        cleanup.push_async_callback(_cleanup_step, name, step, on_event)

    async with AsyncExitStack() as cleanup:
        register_cleanup("close remote session", client.close)
        register_cleanup("stop local server", _as_async(server.stop))

        emit("connect", "Connecting to the capture service")
        await client.connect()

        server.start()
        emit("server", f"Serving {html_path.parent} at {server.url}", url=server.url)

        injector.backup()
        if options.restore:
            register_cleanup("restore HTML file", _as_async(injector.restore))
        injector.inject()
        emit("inject", f"Capture script injected into {html_path.name}", path=str(html_path))

        initiated = await client.initiate_capture(request)
        capture_id = initiated.capture_id
        if not capture_id:
            raise MissingCaptureIdError("The capture service did not return a capture ID")
        emit("capture", f"Capture ID: {capture_id}", capture_id=capture_id)

        capture_url = build_capture_url(
            server.url, html_path.name, capture_id, client.capture_endpoint(capture_id)
        )
        emit("browser", f"Opening {capture_url}", url=capture_url)
        opener(capture_url)
        if options.settle_delay:
            await sleep(options.settle_delay)

        result = await poll_until_terminal(
            lambda: client.poll_capture(request, capture_id),
            capture_id,
            options.poll_interval,
            options.poll_timeout,
            on_event=on_event,
            sleep=sleep,
            clock=clock,
        )

        if result.design_url:
            emit("completed", f"Design ready: {result.design_url}", url=result.design_url)
            opener(result.design_url)
        else:
            emit(
                "completed_without_url",
                f"Capture {capture_id} completed but no design URL was returned",
                capture_id=capture_id,
            )
        return result


def _as_async(func: Callable[[], None]) -> Callable[[], Awaitable[None]]:
    async def runner() -> None:
        func()

    return runner


async def _cleanup_step(
    name: str,
    step: Callable[[], Awaitable[None]],
    on_event: EventCallback,
) -> None:
    try:
        await step()
    except Exception:  # pylint: disable=broad-except
        logger.warning("Cleanup step failed: %s", name, exc_info=True)
        return
    on_event(CaptureEvent("cleanup", f"Cleanup: {name}", {"step": name}))
