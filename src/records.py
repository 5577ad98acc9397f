"""User profile and video records exchanged with Supabase."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

VIDEO_KEY_PREFIX = "user-videos"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    EXPIRED = "expired"
    TRIAL = "trial"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def is_premium(self) -> bool:
        return self in (SubscriptionTier.PREMIUM, SubscriptionTier.TRIAL)


class VideoStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def display_name(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_in_progress(self) -> bool:
        return self in (VideoStatus.PENDING, VideoStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_in_progress


_STATUS_LABELS = {
    VideoStatus.PENDING: "Pending",
    VideoStatus.PROCESSING: "Generating...",
    VideoStatus.COMPLETED: "Ready",
    VideoStatus.FAILED: "Failed",
    VideoStatus.CANCELLED: "Cancelled",
}

_ALLOWED_TRANSITIONS: dict[VideoStatus, frozenset[VideoStatus]] = {
    VideoStatus.PENDING: frozenset(
        {
            VideoStatus.PROCESSING,
            VideoStatus.COMPLETED,
            VideoStatus.FAILED,
            VideoStatus.CANCELLED,
        }
    ),
    VideoStatus.PROCESSING: frozenset(
        {VideoStatus.COMPLETED, VideoStatus.FAILED, VideoStatus.CANCELLED}
    ),
    VideoStatus.COMPLETED: frozenset(),
    VideoStatus.FAILED: frozenset(),
    VideoStatus.CANCELLED: frozenset(),
}


class VideoResolution(str, Enum):
    HD720 = "720p"
    HD1080 = "1080p"

    @property
    def dimensions(self) -> tuple[int, int]:
        if self is VideoResolution.HD720:
            return (1280, 720)
        return (1920, 1080)


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"

    @property
    def is_landscape(self) -> bool:
        return self is AspectRatio.LANDSCAPE

    @property
    def ratio(self) -> float:
        return 16.0 / 9.0 if self.is_landscape else 9.0 / 16.0

    @property
    def dimensions(self) -> tuple[int, int]:
        return (1280, 720) if self.is_landscape else (720, 1280)


class InvalidStatusTransition(ValueError):
    """Raised when a video record is moved out of a terminal status."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def storage_key_for(user_id: str, video_id: uuid.UUID | str) -> str:
    """Return the object path of the MP4 belonging to ``video_id``."""

    return f"{VIDEO_KEY_PREFIX}/{user_id}/{video_id}.mp4"


def thumbnail_key_for(user_id: str, video_id: uuid.UUID | str) -> str:
    return f"{VIDEO_KEY_PREFIX}/{user_id}/{video_id}_thumb.jpg"


def encode_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, list):
        return list(value)
    return value


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)
    return None


def _parse_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass
class UserProfile:
    supabase_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    apple_id: str | None = None

    email: str | None = None
    display_name: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    last_sign_in_at: datetime | None = None
    email_verified: bool = False

    preferred_aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    default_duration: float = 5.0
    preferred_resolution: VideoResolution = VideoResolution.HD720
    notifications_enabled: bool = True
    auto_save_to_photos: bool = False

    videos_generated: int = 0
    total_storage_used: int = 0
    last_generation_at: datetime | None = None

    subscription_status: SubscriptionTier = SubscriptionTier.FREE
    subscription_expires_at: datetime | None = None
    daily_generation_count: int = 0
    last_daily_reset: datetime = field(default_factory=lambda: start_of_day(utcnow()))

    app_version: str | None = None
    onboarding_completed: bool = False
    prompt_tips_shown: bool = False

    @property
    def initials(self) -> str:
        if self.full_name:
            parts = [part for part in self.full_name.split(" ") if part]
            return "".join(part[0] for part in parts)[:2].upper()
        if self.display_name:
            return self.display_name[:2].upper()
        if self.email:
            return self.email[:2].upper()
        return "U"

    def subscription_is_expiring(self, now: datetime | None = None) -> bool:
        if self.subscription_expires_at is None:
            return False
        days_left = (self.subscription_expires_at - (now or utcnow())).days
        return 0 < days_left <= 7

    def subscription_is_expired(self, now: datetime | None = None) -> bool:
        if self.subscription_expires_at is None:
            return False
        return (now or utcnow()) > self.subscription_expires_at

    def to_row(self) -> dict[str, Any]:
        return {f.name: encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserProfile":
        known = {f.name for f in fields(cls)}
        data = {key: value for key, value in row.items() if key in known}
        if "id" in data and data["id"] is not None:
            data["id"] = _parse_uuid(data["id"])
        else:
            data.pop("id", None)
        for key in (
            "created_at",
            "last_sign_in_at",
            "last_generation_at",
            "subscription_expires_at",
            "last_daily_reset",
        ):
            if key in data:
                data[key] = _parse_datetime(data[key])
        if data.get("preferred_aspect_ratio") is not None:
            data["preferred_aspect_ratio"] = AspectRatio(data["preferred_aspect_ratio"])
        if data.get("preferred_resolution") is not None:
            data["preferred_resolution"] = VideoResolution(data["preferred_resolution"])
        if data.get("subscription_status") is not None:
            data["subscription_status"] = SubscriptionTier(data["subscription_status"])
        # NULL columns fall back to the dataclass defaults
        for key in list(data):
            if data[key] is None and key not in _NULLABLE_USER_FIELDS:
                del data[key]
        return cls(**data)


_NULLABLE_USER_FIELDS = frozenset(
    {
        "apple_id",
        "email",
        "display_name",
        "full_name",
        "avatar_url",
        "last_sign_in_at",
        "last_generation_at",
        "subscription_expires_at",
        "app_version",
    }
)


@dataclass
class VideoRecord:
    """One generated (or generating) video owned by ``user_id``.

    ``storage_key`` and ``thumbnail_storage_key`` are derived from
    ``(user_id, id)`` when not supplied and never change afterwards.
    """

    user_id: str
    prompt: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    duration: float = 5.0
    resolution: VideoResolution = VideoResolution.HD720
    frame_rate: int = 24
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    storage_key: str | None = None
    thumbnail_storage_key: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None

    generation_id: str | None = None
    status: VideoStatus = VideoStatus.PENDING
    generation_time: float | None = None
    error_message: str | None = None

    title: str | None = None
    tags: list[str] = field(default_factory=list)
    favorited: bool = False
    share_count: int = 0
    view_count: int = 0

    def __post_init__(self) -> None:
        if self.storage_key is None:
            self.storage_key = storage_key_for(self.user_id, self.id)
        if self.thumbnail_storage_key is None:
            self.thumbnail_storage_key = thumbnail_key_for(self.user_id, self.id)

    @property
    def is_ready(self) -> bool:
        return self.status is VideoStatus.COMPLETED and self.video_url is not None

    @property
    def can_regenerate(self) -> bool:
        return self.status in (VideoStatus.FAILED, VideoStatus.COMPLETED)

    @property
    def formatted_duration(self) -> str:
        return f"{self.duration:.1f}s"

    def transition_to(
        self,
        status: VideoStatus,
        *,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> "VideoRecord":
        """Return a copy moved to ``status``; terminal states are final."""

        status = VideoStatus(status)
        if status is not self.status and status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(
                f"cannot move video {self.id} from {self.status.value} to {status.value}"
            )
        return replace(
            self,
            status=status,
            error_message=error_message,
            updated_at=now or utcnow(),
        )

    def with_video_url(self, video_url: str, *, now: datetime | None = None) -> "VideoRecord":
        completed = self.transition_to(VideoStatus.COMPLETED, now=now)
        return replace(completed, video_url=video_url)

    def regenerate(self) -> "VideoRecord":
        return VideoRecord(
            user_id=self.user_id,
            prompt=self.prompt,
            aspect_ratio=self.aspect_ratio,
            duration=self.duration,
            resolution=self.resolution,
            frame_rate=self.frame_rate,
            title=self.title,
            tags=list(self.tags),
        )

    def create_variant(self) -> "VideoRecord":
        variant = self.regenerate()
        if self.title is not None:
            variant.title = f"{self.title} (Variant)"
        return variant

    def to_row(self) -> dict[str, Any]:
        return {f.name: encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VideoRecord":
        known = {f.name for f in fields(cls)}
        data = {key: value for key, value in row.items() if key in known}
        if data.get("id") is not None:
            data["id"] = _parse_uuid(data["id"])
        else:
            data.pop("id", None)
        for key in ("created_at", "updated_at"):
            parsed = _parse_datetime(data.get(key))
            if parsed is None:
                data.pop(key, None)
            else:
                data[key] = parsed
        if data.get("aspect_ratio") is not None:
            data["aspect_ratio"] = AspectRatio(data["aspect_ratio"])
        if data.get("resolution") is not None:
            data["resolution"] = VideoResolution(data["resolution"])
        if data.get("status") is not None:
            data["status"] = VideoStatus(data["status"])
        if data.get("tags") is None:
            data.pop("tags", None)
        for key in ("frame_rate", "favorited", "share_count", "view_count", "duration"):
            if key in data and data[key] is None:
                data.pop(key)
        return cls(**data)
