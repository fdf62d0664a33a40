"""Configuration objects and constants for the capture CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigError

DEFAULT_MCP_URL = "https://mcp.figma.com/mcp"
DESKTOP_MCP_URL = "http://127.0.0.1:3845/mcp"
CAPTURE_TOOL_NAME = "generate_figma_design"
CAPTURE_SCRIPT_URL = "https://mcp.figma.com/mcp/html-to-design/capture.js"
CAPTURE_SCRIPT_MARKER = "capture.js"
CAPTURE_ENDPOINT_TEMPLATE = "https://mcp.figma.com/mcp/capture/{capture_id}"
DESIGN_URL_PREFIX = "https://www.figma.com/"

DEFAULT_PORT = 8080
DEFAULT_FILE_NAME = "Design from HTML"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_TIMEOUT = 300.0
DEFAULT_SETTLE_DELAY = 3.0
DEFAULT_REQUEST_TIMEOUT = 60.0

OAUTH_CALLBACK_PORT = 38421
OAUTH_CALLBACK_PATH = "/callback"
OAUTH_CLIENT_NAME = "figma-capture"
CLIENT_VERSION = "0.1.0"

AUTH_MODES = ("token", "oauth", "desktop")
OUTPUT_MODES = ("newFile", "existingFile")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_float(name: str, default: float) -> float:
    value = env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def env_int(name: str, default: int) -> int:
    value = env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def env_bool(name: str, default: bool) -> bool:
    value = env_str(name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


@dataclass
class ServerConfig:
    """Where the static file responder listens and what it serves."""

    port: int
    directory: Path


@dataclass
class ClientConfig:
    """Connection and authentication settings for the remote capture service."""

    mcp_url: str = DEFAULT_MCP_URL
    auth_mode: str = "token"
    access_token: Optional[str] = None
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    oauth_callback_port: int = OAUTH_CALLBACK_PORT
    oauth_callback_path: str = OAUTH_CALLBACK_PATH
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    tool_name: str = CAPTURE_TOOL_NAME
    design_url_prefix: str = DESIGN_URL_PREFIX
    capture_endpoint_template: str = CAPTURE_ENDPOINT_TEMPLATE

    @property
    def oauth_redirect_uri(self) -> str:
        return f"http://localhost:{self.oauth_callback_port}{self.oauth_callback_path}"

    @property
    def oauth_fallback_enabled(self) -> bool:
        return self.auth_mode == "token"

    def validate(self) -> None:
        if self.auth_mode not in AUTH_MODES:
            raise ConfigError(
                f"Unknown auth mode {self.auth_mode!r}; expected one of {', '.join(AUTH_MODES)}"
            )
        if self.auth_mode == "token" and not self.access_token:
            raise ConfigError(
                "Missing Figma access token; pass --token or set FIGMA_ACCESS_TOKEN"
            )
        if self.oauth_client_secret and not self.oauth_client_id:
            raise ConfigError("An OAuth client secret requires an OAuth client id")


@dataclass
class CaptureOptions:
    """Top-level settings for one capture run."""

    html_path: Path
    port: int = DEFAULT_PORT
    file_name: Optional[str] = DEFAULT_FILE_NAME
    team_id: Optional[str] = None
    output_mode: str = "newFile"
    source_url: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    settle_delay: float = DEFAULT_SETTLE_DELAY
    restore: bool = True
    script_url: str = CAPTURE_SCRIPT_URL
    script_marker: str = CAPTURE_SCRIPT_MARKER

    def validate(self) -> None:
        if self.output_mode not in OUTPUT_MODES:
            raise ConfigError(
                f"Unknown output mode {self.output_mode!r}; "
                f"expected one of {', '.join(OUTPUT_MODES)}"
            )
        if self.poll_interval < 0:
            raise ConfigError("Poll interval must not be negative")
        if self.poll_timeout <= 0:
            raise ConfigError("Poll timeout must be positive")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"Port out of range: {self.port}")


def resolve_auth_mode(requested: Optional[str], access_token: Optional[str]) -> str:
    """Pick the auth mode, preferring a bearer token when one is available."""
    if requested:
        return requested
    return "token" if access_token else "oauth"


def resolve_mcp_url(requested: Optional[str], auth_mode: str) -> str:
    if requested:
        return requested
    return DESKTOP_MCP_URL if auth_mode == "desktop" else DEFAULT_MCP_URL
