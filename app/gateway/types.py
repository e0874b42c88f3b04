"""Core types and DTOs for the generation gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GenerationKind(str, Enum):
    """What the remote call produces. Drives quota accounting."""

    TEXT = "text"
    IMAGE = "image"


class GenerationStage(str, Enum):
    """Stages a single gateway call moves through (never re-entered)."""

    VALIDATING = "validating"
    CACHE_CHECK = "cache_check"
    QUOTA_CHECK = "quota_check"
    AWAITING_SLOT = "awaiting_slot"
    EXECUTING = "executing"
    CACHED = "cached"  # Terminal: artifact returned (hit or fresh write)
    FAILED = "failed"  # Terminal: validation, quota or remote error


class FailureClass(str, Enum):
    """Classification of a failed remote attempt."""

    RATE_LIMITED = "rate_limited"  # 429 / quota message, retryable
    SERVER_ERROR = "server_error"  # 5xx, retryable
    TIMEOUT = "timeout"  # deadline hit, retryable
    CLIENT_ERROR = "client_error"  # other 4xx, safety rejection, fatal
    PROTOCOL_ERROR = "protocol_error"  # no artifact in response, fatal

    @property
    def retryable(self) -> bool:
        return self in (FailureClass.RATE_LIMITED, FailureClass.SERVER_ERROR, FailureClass.TIMEOUT)


# ---------------------------------------------------------------------------
# Request inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InlineImage:
    """Raw image bytes plus their MIME type."""

    data: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class CharacterBlueprint:
    """A character's textual blueprint, used to keep a character consistent across scenes."""

    name: str
    profile: str
    identity_locked: bool = False


@dataclass(frozen=True)
class TextRequest:
    prompt: str
    reference_images: tuple[InlineImage, ...] = ()

    kind = GenerationKind.TEXT


@dataclass(frozen=True)
class ImageFromTextRequest:
    prompt: str
    characters: tuple[CharacterBlueprint, ...] = ()
    style_references: tuple[InlineImage, ...] = ()

    kind = GenerationKind.IMAGE


@dataclass(frozen=True)
class ImageEditRequest:
    source: InlineImage
    prompt: str
    characters: tuple[CharacterBlueprint, ...] = ()

    kind = GenerationKind.IMAGE

    @property
    def locked_characters(self) -> tuple[CharacterBlueprint, ...]:
        """Only identity-locked characters are sent along with an edit."""
        return tuple(c for c in self.characters if c.identity_locked)


GenerationRequest = Union[TextRequest, ImageFromTextRequest, ImageEditRequest]


# ---------------------------------------------------------------------------
# Remote outcome: result of one attempt (never a raw exception)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class RetryableFailure:
    classification: FailureClass
    message: str = ""
    status_code: int = 0


@dataclass(frozen=True)
class FatalFailure:
    classification: FailureClass
    reason: str = ""
    status_code: int = 0


RemoteOutcome = Union[Success, RetryableFailure, FatalFailure]


# ---------------------------------------------------------------------------
# Usage snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageSnapshot:
    """Read-only projection of the two quota windows."""

    images_this_minute: int
    images_per_minute_limit: int
    minute_reset_in_seconds: int
    requests_today: int
    requests_per_day_limit: int
    daily_reset_in_seconds: int

    def to_dict(self) -> dict:
        """Serialize to the JSON shape the UI reads."""
        return {
            "requestsToday": self.requests_today,
            "requestsPerDayLimit": self.requests_per_day_limit,
            "imagesThisMinute": self.images_this_minute,
            "imagesPerMinuteLimit": self.images_per_minute_limit,
            "minuteResetInSeconds": self.minute_reset_in_seconds,
            "dailyResetInSeconds": self.daily_reset_in_seconds,
        }

    def to_headers(self) -> dict[str, str]:
        """Render as X-Usage-* response headers."""
        return {
            "X-Usage-Requests-Today": str(self.requests_today),
            "X-Usage-Requests-Limit": str(self.requests_per_day_limit),
            "X-Usage-Images-Minute": str(self.images_this_minute),
            "X-Usage-Images-Minute-Limit": str(self.images_per_minute_limit),
            "X-Usage-Second-Reset-Minute": str(self.minute_reset_in_seconds),
            "X-Usage-Second-Reset-Day": str(self.daily_reset_in_seconds),
        }


@dataclass(frozen=True)
class QuotaReservation:
    """What a successful admission charged, and to which windows."""

    kind: GenerationKind
    cost: int
    unit_window_start: float
    request_window_start: float


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    snapshot: UsageSnapshot
    reservation: QuotaReservation | None = None


# ---------------------------------------------------------------------------
# Cache entry / gateway result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: bytes
    mime_type: str
    location: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class GenerationResult:
    """Artifact returned by the gateway, fresh or from cache."""

    data: bytes
    mime_type: str
    key: str = ""
    cache_hit: bool = False
    location: str = ""  # durable handle, e.g. "/generated/cache/<key>.png"
    attempts: int = 0

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


# ---------------------------------------------------------------------------
# Gateway config
# ---------------------------------------------------------------------------


@dataclass
class GatewayConfig:
    """Remote call policy and validation bounds for the gateway."""

    image_model: str = "gemini-2.5-flash-image-preview"
    text_model: str = "gemini-2.5-flash"
    timeout_seconds: float = 45.0
    max_attempts: int = 3  # Total attempts, not retries after the first
    base_retry_delay: float = 0.75
    max_retry_delay: float = 10.0
    retry_jitter: float = 0.25
    image_cost: int = 1  # Units consumed from the per-minute window per image
    refund_quota_on_fatal: bool = False
    min_prompt_length: int = 3
    max_prompt_length: int = 8000
    blocked_terms: tuple[str, ...] = ()
    max_image_bytes: int = 20 * 1024 * 1024

    def model_for(self, kind: GenerationKind) -> str:
        return self.image_model if kind == GenerationKind.IMAGE else self.text_model
