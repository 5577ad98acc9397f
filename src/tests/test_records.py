import os
import sys
import uuid
from dataclasses import fields
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import models
from records import (
    AspectRatio,
    InvalidStatusTransition,
    SubscriptionTier,
    UserProfile,
    VideoRecord,
    VideoResolution,
    VideoStatus,
    storage_key_for,
)

VIDEO_ID = uuid.UUID("0b7b2a52-31a4-4c53-9c0e-2f6f1d1f6a10")


def test_storage_key_is_derived_from_owner_and_id():
    video = VideoRecord(user_id="user-1", prompt="waves", id=VIDEO_ID)

    assert video.storage_key == f"user-videos/user-1/{VIDEO_ID}.mp4"
    assert video.thumbnail_storage_key == f"user-videos/user-1/{VIDEO_ID}_thumb.jpg"
    assert storage_key_for("user-1", VIDEO_ID) == video.storage_key


def test_storage_key_survives_status_changes():
    video = VideoRecord(user_id="user-1", prompt="waves", id=VIDEO_ID)

    done = video.transition_to(VideoStatus.PROCESSING).with_video_url("https://x/v.mp4")

    assert done.storage_key == video.storage_key
    assert done.status is VideoStatus.COMPLETED
    assert done.video_url == "https://x/v.mp4"
    assert done.is_ready


@pytest.mark.parametrize(
    "target",
    [VideoStatus.PROCESSING, VideoStatus.COMPLETED, VideoStatus.FAILED, VideoStatus.CANCELLED],
)
def test_pending_can_move_anywhere(target):
    video = VideoRecord(user_id="user-1", prompt="waves")

    assert video.transition_to(target).status is target


@pytest.mark.parametrize(
    "terminal", [VideoStatus.COMPLETED, VideoStatus.FAILED, VideoStatus.CANCELLED]
)
def test_terminal_status_is_final(terminal):
    video = VideoRecord(user_id="user-1", prompt="waves").transition_to(terminal)

    with pytest.raises(InvalidStatusTransition):
        video.transition_to(VideoStatus.PROCESSING)
    with pytest.raises(InvalidStatusTransition):
        video.transition_to(VideoStatus.PENDING)
    assert video.transition_to(terminal).status is terminal


def test_processing_cannot_go_back_to_pending():
    video = VideoRecord(user_id="user-1", prompt="waves").transition_to(
        VideoStatus.PROCESSING
    )

    with pytest.raises(InvalidStatusTransition):
        video.transition_to(VideoStatus.PENDING)


def test_transition_stamps_updated_at_and_error():
    stamp = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    video = VideoRecord(user_id="user-1", prompt="waves")

    failed = video.transition_to(VideoStatus.FAILED, error_message="boom", now=stamp)

    assert failed.updated_at == stamp
    assert failed.error_message == "boom"
    assert video.status is VideoStatus.PENDING
    assert failed.can_regenerate


def test_regenerate_and_variant_get_fresh_identity():
    video = VideoRecord(
        user_id="user-1",
        prompt="waves",
        title="Beach",
        tags=["sea"],
        aspect_ratio=AspectRatio.PORTRAIT,
    ).transition_to(VideoStatus.FAILED, error_message="boom")

    again = video.regenerate()
    variant = video.create_variant()

    assert again.id != video.id
    assert again.storage_key != video.storage_key
    assert again.status is VideoStatus.PENDING
    assert again.error_message is None
    assert again.aspect_ratio is AspectRatio.PORTRAIT
    assert again.tags == ["sea"]
    assert variant.title == "Beach (Variant)"


def test_video_row_uses_wire_values():
    created = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    video = VideoRecord(
        user_id="user-1", prompt="waves", id=VIDEO_ID, created_at=created, updated_at=created
    )

    row = video.to_row()

    assert row["id"] == str(VIDEO_ID)
    assert row["status"] == "pending"
    assert row["aspect_ratio"] == "16:9"
    assert row["resolution"] == "720p"
    assert row["created_at"] == "2026-05-01T12:00:00+00:00"
    assert VideoRecord.from_row(row) == video


def test_video_from_row_accepts_zulu_timestamps_and_nulls():
    row = {
        "id": str(VIDEO_ID),
        "user_id": "user-1",
        "prompt": "waves",
        "status": "completed",
        "created_at": "2026-05-01T12:00:00Z",
        "updated_at": "2026-05-01T12:05:00Z",
        "tags": None,
        "frame_rate": None,
        "video_url": "https://x/v.mp4",
        "unexpected_column": "ignored",
    }

    video = VideoRecord.from_row(row)

    assert video.created_at == datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert video.tags == []
    assert video.frame_rate == 24
    assert video.status is VideoStatus.COMPLETED
    assert video.storage_key == f"user-videos/user-1/{VIDEO_ID}.mp4"


def test_user_profile_row_round_trip_keeps_nullable_fields():
    profile = UserProfile(
        supabase_id="user-1",
        email="ada@example.com",
        subscription_status=SubscriptionTier.PREMIUM,
        preferred_resolution=VideoResolution.HD720,
        subscription_expires_at=datetime(2026, 6, 1, tzinfo=timezone.utc),
    )

    row = profile.to_row()
    row["apple_id"] = None
    row["daily_generation_count"] = None

    restored = UserProfile.from_row(row)

    assert restored.id == profile.id
    assert restored.subscription_status is SubscriptionTier.PREMIUM
    assert restored.apple_id is None
    assert restored.daily_generation_count == 0
    assert restored.subscription_expires_at == profile.subscription_expires_at


def test_user_profile_helpers():
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)
    profile = UserProfile(
        supabase_id="user-1",
        full_name="ada king lovelace",
        subscription_expires_at=now + timedelta(days=3, hours=1),
    )

    assert profile.initials == "AK"
    assert UserProfile(supabase_id="u", email="zed@example.com").initials == "ZE"
    assert UserProfile(supabase_id="u").initials == "U"
    assert profile.subscription_is_expiring(now)
    assert not profile.subscription_is_expired(now)
    assert profile.subscription_is_expired(now + timedelta(days=4))
    assert SubscriptionTier.TRIAL.is_premium
    assert not SubscriptionTier.EXPIRED.is_premium


def test_status_labels():
    assert VideoStatus.PROCESSING.display_name == "Generating..."
    assert VideoStatus.COMPLETED.display_name == "Ready"
    assert VideoStatus.PENDING.is_in_progress
    assert VideoStatus.CANCELLED.is_terminal
    assert VideoResolution.HD1080.dimensions == (1920, 1080)
    assert AspectRatio.PORTRAIT.dimensions == (720, 1280)


@pytest.mark.parametrize(
    ("model", "record"), [(models.User, UserProfile), (models.Video, VideoRecord)]
)
def test_table_columns_match_record_fields(model, record):
    columns = {column.name for column in model.__table__.columns}

    assert columns == {f.name for f in fields(record)}
