"""Interpretation of free-text and JSON responses from the capture tool."""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Optional, Sequence

from .config import DESIGN_URL_PREFIX
from .models import CaptureResult

CaptureIdStrategy = Callable[[str], Optional[str]]

CAPTURE_ID_KEYS = ("captureId", "capture_id")
DESIGN_URL_KEYS = ("figmaUrl", "fileUrl", "designUrl", "url")

LABEL_PATTERN = re.compile(
    r"capture[\s_-]?id\s*(?:is\s*)?[:=]?\s*[`'\"]?([A-Za-z0-9_-]*\d[A-Za-z0-9_-]*)",
    re.IGNORECASE,
)
JSON_FRAGMENT_PATTERN = re.compile(
    r"[\"']capture_?id[\"']\s*:\s*[\"']([^\"'\s]+)[\"']",
    re.IGNORECASE,
)
UUID_PATTERN = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
    re.IGNORECASE,
)
# "not completed", "not yet completed" and "hasn't completed" are still pending.
COMPLETED_PATTERN = re.compile(
    r"(?<!not )(?<!not yet )(?<!n't )(?<!n't yet )\bcompleted\b",
    re.IGNORECASE,
)
FAILED_PATTERN = re.compile(r"\bfail(?:ed|ure)\b", re.IGNORECASE)

# Characters that end a URL embedded in prose or markup.
_URL_BODY = r"[^\s<>()\[\]{}\"'`]*"
_TRAILING_PUNCTUATION = ".,;:!?"


def _load_json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _first_string(data: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def capture_id_from_json(text: str) -> Optional[str]:
    """Read the identifier from a JSON object body."""
    data = _load_json_object(text.strip())
    if data is None:
        return None
    return _first_string(data, CAPTURE_ID_KEYS)


def capture_id_from_label(text: str) -> Optional[str]:
    """Match prose such as ``Capture ID: abc-123``."""
    match = LABEL_PATTERN.search(text)
    return match.group(1) if match else None


def capture_id_from_json_fragment(text: str) -> Optional[str]:
    """Match a quoted ``"captureId": "..."`` pair embedded in other text."""
    match = JSON_FRAGMENT_PATTERN.search(text)
    return match.group(1) if match else None


def capture_id_from_uuid(text: str) -> Optional[str]:
    match = UUID_PATTERN.search(text)
    return match.group(0) if match else None


CAPTURE_ID_STRATEGIES: Sequence[CaptureIdStrategy] = (
    capture_id_from_json,
    capture_id_from_label,
    capture_id_from_json_fragment,
    capture_id_from_uuid,
)


def extract_capture_id(
    text: str,
    strategies: Sequence[CaptureIdStrategy] = CAPTURE_ID_STRATEGIES,
) -> str:
    """Return the first identifier any strategy finds, or an empty string."""
    for strategy in strategies:
        capture_id = strategy(text)
        if capture_id:
            return capture_id
    return ""


def extract_design_url(text: str, prefix: str = DESIGN_URL_PREFIX) -> Optional[str]:
    """Find the first URL under ``prefix`` without absorbing trailing prose."""
    pattern = re.compile(re.escape(prefix) + _URL_BODY, re.IGNORECASE)
    match = pattern.search(text)
    if not match:
        return None
    url = match.group(0).rstrip(_TRAILING_PUNCTUATION)
    return url if len(url) > len(prefix) else None


def _classify_structured(
    data: Dict[str, Any],
    capture_id: str,
    prefix: str,
) -> Optional[CaptureResult]:
    status = data.get("status")
    url = _first_string(data, DESIGN_URL_KEYS)
    if url and not url.lower().startswith(prefix.lower()):
        url = None
    if not isinstance(status, str):
        return CaptureResult.completed(capture_id, url) if url else None
    status = status.strip().lower()
    if status in ("completed", "complete", "done", "success") or url:
        return CaptureResult.completed(capture_id, url)
    if status in ("failed", "failure", "error"):
        error = _first_string(data, ("error", "message")) or json.dumps(data)
        return CaptureResult.failed(capture_id, error)
    return CaptureResult.pending(capture_id)


def classify_poll_response(
    text: str,
    capture_id: str,
    prefix: str = DESIGN_URL_PREFIX,
) -> CaptureResult:
    """Turn a poll response into a pending, completed or failed result."""
    data = _load_json_object(text.strip())
    if data is not None:
        structured = _classify_structured(data, capture_id, prefix)
        if structured is not None:
            return structured

    url = extract_design_url(text, prefix)
    if url or COMPLETED_PATTERN.search(text):
        return CaptureResult.completed(capture_id, url)
    if FAILED_PATTERN.search(text):
        return CaptureResult.failed(capture_id, text)
    return CaptureResult.pending(capture_id)
