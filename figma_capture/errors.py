"""Exception hierarchy for capture runs."""

from __future__ import annotations


class FigmaCaptureError(Exception):
    """Base class for every fatal condition of a capture run."""


class ConfigError(FigmaCaptureError):
    """Missing or malformed configuration."""


class HtmlFileNotFoundError(FigmaCaptureError, FileNotFoundError):
    """The HTML file to capture does not exist."""


class AuthorizationError(FigmaCaptureError):
    """The remote service rejected our credentials and recovery failed."""


class OAuthCallbackError(FigmaCaptureError):
    """The OAuth redirect carried an error or no authorization code."""


class RemoteToolError(FigmaCaptureError):
    """The remote tool call itself reported an error."""


class MissingCaptureIdError(FigmaCaptureError):
    """No capture identifier could be read from the initiation response."""


class CaptureFailedError(FigmaCaptureError):
    """The remote service reported the capture as failed."""

    def __init__(self, capture_id: str, error: str) -> None:
        super().__init__(f"Capture {capture_id} failed: {error}")
        self.capture_id = capture_id
        self.error = error


class CaptureTimeoutError(FigmaCaptureError):
    """The capture did not reach a terminal state before the deadline."""

    def __init__(self, capture_id: str, timeout: float, attempts: int) -> None:
        super().__init__(
            f"Capture {capture_id} still pending after {timeout:.1f}s ({attempts} polls)"
        )
        self.capture_id = capture_id
        self.timeout = timeout
        self.attempts = attempts


class RemoteConnectionError(FigmaCaptureError):
    """The remote service could not be reached."""
