from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True)
    supabase_id = Column(String, unique=True, nullable=False)
    apple_id = Column(String)

    email = Column(String)
    display_name = Column(String)
    full_name = Column(String)
    avatar_url = Column(String)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_sign_in_at = Column(DateTime(timezone=True))
    email_verified = Column(Boolean, default=False, nullable=False)

    preferred_aspect_ratio = Column(String, default="16:9", nullable=False)
    default_duration = Column(Float, default=5.0, nullable=False)
    preferred_resolution = Column(String, default="720p", nullable=False)
    notifications_enabled = Column(Boolean, default=True, nullable=False)
    auto_save_to_photos = Column(Boolean, default=False, nullable=False)

    videos_generated = Column(Integer, default=0, nullable=False)
    total_storage_used = Column(BigInteger, default=0, nullable=False)
    last_generation_at = Column(DateTime(timezone=True))

    subscription_status = Column(String, default="free", nullable=False)
    subscription_expires_at = Column(DateTime(timezone=True))
    daily_generation_count = Column(Integer, default=0, nullable=False)
    last_daily_reset = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    app_version = Column(String)
    onboarding_completed = Column(Boolean, default=False, nullable=False)
    prompt_tips_shown = Column(Boolean, default=False, nullable=False)


class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (Index("ix_videos_user_id_created_at", "user_id", "created_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True)
    # owner's supabase_id
    user_id = Column(String, nullable=False)
    prompt = Column(Text, nullable=False)
    aspect_ratio = Column(String, default="16:9", nullable=False)
    duration = Column(Float, default=5.0, nullable=False)
    resolution = Column(String, default="720p", nullable=False)
    frame_rate = Column(Integer, default=24, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    storage_key = Column(String, unique=True, nullable=False)
    thumbnail_storage_key = Column(String)
    video_url = Column(String)
    thumbnail_url = Column(String)

    generation_id = Column(String)
    status = Column(String, default="pending", nullable=False)
    generation_time = Column(Float)
    error_message = Column(Text)

    title = Column(String)
    tags = Column(ARRAY(Text), default=list, nullable=False)
    favorited = Column(Boolean, default=False, nullable=False)
    share_count = Column(Integer, default=0, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
