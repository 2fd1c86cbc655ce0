"""Data types shared across the DingTalk channel."""

from dataclasses import dataclass, field
from typing import Any, Literal

MediaType = Literal["image", "voice", "video", "file"]


@dataclass
class MessageContent:
    """Normalized text and media reference extracted from an inbound event."""
    text: str
    message_type: str
    media_code: str | None = None  # downloadCode, resolved later
    media_type: str | None = None


@dataclass
class MediaFile:
    """A downloaded inbound attachment living in the temp dir."""
    path: str
    mime_type: str


@dataclass
class SendOptions:
    """Options for outbound sends."""
    title: str | None = None
    use_markdown: bool | None = None  # None = auto-detect
    at_user_id: str | None = None
    media_path: str | None = None
    media_type: MediaType | None = None
    session_webhook: str | None = None
    account_id: str | None = None


@dataclass
class SendResult:
    """Structured outcome of an outbound send; errors are reported, not raised."""
    ok: bool
    data: Any = None
    error: str | None = None
    message_id: str | None = None


@dataclass
class ProbeResult:
    ok: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class TargetResult:
    ok: bool
    to: str = ""
    error: str | None = None


@dataclass
class AccountStatus:
    """Runtime snapshot of one account, updated on start/stop/failure."""
    account_id: str
    running: bool = False
    last_start_at: float | None = None
    last_stop_at: float | None = None
    last_error: str | None = None

    def summary(self, configured: bool) -> dict[str, Any]:
        return {
            "configured": configured,
            "running": self.running,
            "lastStartAt": self.last_start_at,
            "lastStopAt": self.last_stop_at,
            "lastError": self.last_error,
        }
