"""Run one prompt end to end: quota gate, fal.ai generation, Supabase upload."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime

import requests
from requests import exceptions as requests_exceptions

from fal_queue import (
    REQUEST_TIMEOUT_SECONDS,
    CancellationToken,
    FalError,
    GenerationCancelled,
    NetworkError,
    VideoGenerator,
    validate_parameters,
    validate_prompt,
)
from quota import (
    can_generate_video,
    daily_generation_limit,
    is_storage_at_limit,
)
from records import AspectRatio, VideoRecord, VideoResolution, VideoStatus
from supabase_gateway import SupabaseError, SupabaseGateway, UserNotAuthenticated

logger = logging.getLogger(__name__)


class QuotaError(RuntimeError):
    """The current user may not start another generation."""


class DailyLimitReached(QuotaError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Daily generation limit of {limit} reached")
        self.limit = limit


class StorageLimitReached(QuotaError):
    def __init__(self) -> None:
        super().__init__("Storage limit reached")


@dataclass(frozen=True)
class VideoJob:
    prompt: str
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    duration: float = 5.0
    resolution: VideoResolution = VideoResolution.HD720
    title: str | None = None
    tags: list[str] = field(default_factory=list)


def fetch_video_bytes(url: str, timeout: float = REQUEST_TIMEOUT_SECONDS) -> bytes:
    """Download the MP4 produced by fal.ai."""

    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests_exceptions.RequestException as exc:
        raise NetworkError(str(exc)) from exc
    return response.content


async def _mark_video(
    gateway: SupabaseGateway,
    video: VideoRecord,
    status: VideoStatus,
    error_message: str | None = None,
) -> None:
    """Best-effort status update; the caller's own error takes precedence."""

    try:
        await gateway.update_video_status(video.id, status, error_message)
    except SupabaseError as exc:
        logger.warning(
            "Could not mark video %s as %s: %s", video.id, status.value, exc
        )


async def process_video_job(
    generator: VideoGenerator,
    gateway: SupabaseGateway,
    job: VideoJob,
    *,
    token: CancellationToken | None = None,
    now: datetime | None = None,
) -> VideoRecord:
    """Generate ``job`` for the signed-in user and store the result.

    Returns the completed record. Generation errors mark the record
    ``failed`` (or ``cancelled``) before being re-raised.
    """

    user = gateway.current_user
    if user is None:
        raise UserNotAuthenticated()
    validate_prompt(job.prompt)
    validate_parameters(job.duration, job.resolution)

    # a new day passes the gate; record_generation applies the reset
    if not can_generate_video(user, now):
        raise DailyLimitReached(daily_generation_limit(user.subscription_status))
    if is_storage_at_limit(user):
        raise StorageLimitReached()

    video = VideoRecord(
        user_id=user.supabase_id,
        prompt=job.prompt,
        aspect_ratio=AspectRatio(job.aspect_ratio),
        duration=job.duration,
        resolution=VideoResolution(job.resolution),
        title=job.title,
        tags=list(job.tags),
    )
    await gateway.save_video_metadata(video)
    video = video.transition_to(VideoStatus.PROCESSING)
    await gateway.update_video_status(video.id, VideoStatus.PROCESSING)
    logger.info("Processing video %s for user %s", video.id, user.supabase_id)

    started = time.monotonic()
    try:
        result = await generator.generate_video(
            job.prompt,
            aspect_ratio=job.aspect_ratio,
            duration=job.duration,
            resolution=job.resolution,
            token=token,
        )
        data = await asyncio.to_thread(fetch_video_bytes, result.video.url)
    except (GenerationCancelled, asyncio.CancelledError):
        await _mark_video(gateway, video, VideoStatus.CANCELLED)
        raise
    except FalError as exc:
        await _mark_video(gateway, video, VideoStatus.FAILED, exc.message)
        raise

    generation_time = time.monotonic() - started
    if result.timings is not None and result.timings.total is not None:
        generation_time = result.timings.total
    video = replace(
        video, generation_id=result.request_id, generation_time=generation_time
    )

    try:
        public_url = await gateway.upload_video(data, video)
    except asyncio.CancelledError:
        await _mark_video(gateway, video, VideoStatus.CANCELLED)
        raise
    except SupabaseError as exc:
        await _mark_video(gateway, video, VideoStatus.FAILED, str(exc))
        raise

    await gateway.record_generation(now)
    return video.with_video_url(public_url)
