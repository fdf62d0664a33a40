"""Data models shared by the client and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class CaptureStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not CaptureStatus.PENDING


@dataclass(frozen=True)
class CaptureRequest:
    """Parameters of a capture; sent unchanged on initiation and every poll."""

    output_mode: str = "newFile"
    file_name: Optional[str] = None
    team_id: Optional[str] = None
    url: Optional[str] = None

    @property
    def plan_key(self) -> Optional[str]:
        return f"team::{self.team_id}" if self.team_id else None

    def to_arguments(self, capture_id: Optional[str] = None) -> Dict[str, Any]:
        """Build the tool-call arguments, omitting unset optional fields."""
        arguments: Dict[str, Any] = {"outputMode": self.output_mode}
        if self.file_name:
            arguments["fileName"] = self.file_name
        if self.plan_key:
            arguments["planKey"] = self.plan_key
        if self.url:
            arguments["url"] = self.url
        if capture_id:
            arguments["captureId"] = capture_id
        return arguments


@dataclass(frozen=True)
class CaptureResult:
    """Observed state of one capture.

    Use the ``pending``/``completed``/``failed`` constructors; they keep the
    URL and error fields consistent with the status.
    """

    capture_id: str
    status: CaptureStatus
    design_url: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status is CaptureStatus.PENDING and (self.design_url or self.error):
            raise ValueError("A pending capture carries neither a URL nor an error")
        if self.status is CaptureStatus.FAILED and not self.error:
            raise ValueError("A failed capture must carry an error message")
        if self.status is CaptureStatus.COMPLETED and self.error:
            raise ValueError("A completed capture cannot carry an error")

    @classmethod
    def pending(cls, capture_id: str) -> CaptureResult:
        return cls(capture_id=capture_id, status=CaptureStatus.PENDING)

    @classmethod
    def completed(cls, capture_id: str, design_url: Optional[str]) -> CaptureResult:
        return cls(capture_id=capture_id, status=CaptureStatus.COMPLETED, design_url=design_url)

    @classmethod
    def failed(cls, capture_id: str, error: str) -> CaptureResult:
        return cls(
            capture_id=capture_id,
            status=CaptureStatus.FAILED,
            error=error.strip() or "capture failed without details",
        )


@dataclass(frozen=True)
class CaptureEvent:
    """Lifecycle notification emitted by the orchestrator."""

    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
