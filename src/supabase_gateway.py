"""Supabase access for the signed-in user: session, profile, videos, storage."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from functools import partial
from typing import Any, TypeVar
from uuid import UUID

from supabase import Client, create_client

import settings
from quota import (
    StorageUsage,
    add_storage_usage,
    increment_generation_count,
    max_storage_bytes,
    storage_usage_percentage,
)
from records import UserProfile, VideoRecord, VideoStatus, encode_value, utcnow

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
VIDEOS_TABLE = "videos"
VIDEO_CONTENT_TYPE = "video/mp4"
DEFAULT_SIGNED_URL_EXPIRY = 3600
# get_storage_usage does not measure objects, it assumes this size per video
ESTIMATED_BYTES_PER_VIDEO = 5_000_000

# Auth events acted upon by the listener, all others are ignored.
_HANDLED_AUTH_EVENTS = frozenset({"SIGNED_IN", "SIGNED_OUT"})

T = TypeVar("T")
SessionObserver = Callable[["SessionContext"], None]


class SupabaseError(RuntimeError):
    """Base class for Supabase failures, one subclass per operation."""

    prefix = "Supabase error"

    def __init__(self, detail: str = "") -> None:
        message = f"{self.prefix}: {detail}" if detail else self.prefix
        super().__init__(message)
        self.detail = detail


class AuthenticationFailed(SupabaseError):
    prefix = "Authentication failed"


class SignOutFailed(SupabaseError):
    prefix = "Sign out failed"


class AuthCheckFailed(SupabaseError):
    prefix = "Auth check failed"


class UserNotAuthenticated(SupabaseError):
    prefix = "User is not authenticated"


class UserNotFound(SupabaseError):
    prefix = "User profile not found"


class ProfileSaveFailed(SupabaseError):
    prefix = "Failed to save profile"


class ProfileLoadFailed(SupabaseError):
    prefix = "Failed to load profile"


class ProfileUpdateFailed(SupabaseError):
    prefix = "Failed to update profile"


class UploadFailed(SupabaseError):
    prefix = "Upload failed"


class DownloadFailed(SupabaseError):
    prefix = "Download failed"


class DeleteFailed(SupabaseError):
    prefix = "Delete failed"


class SignedURLFailed(SupabaseError):
    prefix = "Failed to create signed URL"


class MetadataSaveFailed(SupabaseError):
    prefix = "Failed to save video metadata"


class VideosLoadFailed(SupabaseError):
    prefix = "Failed to load videos"


class StatusUpdateFailed(SupabaseError):
    prefix = "Failed to update video status"


class MetadataDeleteFailed(SupabaseError):
    prefix = "Failed to delete video metadata"


class StorageUsageFailed(SupabaseError):
    prefix = "Failed to get storage usage"


class ConfigurationError(SupabaseError):
    prefix = "Configuration error"


class SessionContext:
    """Current user snapshot shared with callers.

    Mutated only by :class:`SupabaseGateway`; observers are called after
    every change with the context itself.
    """

    def __init__(self) -> None:
        self.current_user: UserProfile | None = None
        self.is_authenticated = False
        self.is_loading = False
        self._observers: list[SessionObserver] = []

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer(self)

    def set_user(self, user: UserProfile) -> None:
        self.current_user = user
        self.is_authenticated = True
        self._notify()

    def clear(self) -> None:
        self.current_user = None
        self.is_authenticated = False
        self._notify()

    def set_loading(self, loading: bool) -> None:
        self.is_loading = loading
        self._notify()


def _profile_from_auth_user(auth_user: Any, provider: str) -> UserProfile:
    metadata = getattr(auth_user, "user_metadata", None) or {}
    apple_id = None
    if provider == "apple":
        apple_id = metadata.get("provider_id") or metadata.get("sub")
    return UserProfile(
        supabase_id=str(auth_user.id),
        apple_id=apple_id,
        email=getattr(auth_user, "email", None),
        display_name=metadata.get("name"),
        full_name=metadata.get("full_name"),
        last_sign_in_at=utcnow(),
        email_verified=getattr(auth_user, "email_confirmed_at", None) is not None,
    )


def _rows(response: Any) -> list[dict[str, Any]]:
    return list(getattr(response, "data", None) or [])


class SupabaseGateway:
    def __init__(
        self,
        client: Client,
        *,
        url: str | None = None,
        key: str | None = None,
        bucket: str = settings.SUPABASE_VIDEO_BUCKET,
        session: SessionContext | None = None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.session = session or SessionContext()
        self._url = settings.SUPABASE_URL if url is None else url
        self._key = settings.SUPABASE_KEY if key is None else key
        self._listener_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_env(
        cls, url: str | None = None, key: str | None = None, **kwargs: Any
    ) -> "SupabaseGateway":
        url = url or settings.SUPABASE_URL
        key = key or settings.SUPABASE_KEY
        if not url or not key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be set")
        try:
            client = create_client(url, key)
        except Exception as exc:
            raise ConfigurationError(str(exc)) from exc
        return cls(client, url=url, key=key, **kwargs)

    @property
    def is_configured(self) -> bool:
        return bool(self._key) and "supabase" in self._url

    @property
    def current_user(self) -> UserProfile | None:
        return self.session.current_user

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    async def _run(self, call: Callable[[], T]) -> T:
        return await asyncio.to_thread(call)

    def _require_authenticated(self) -> None:
        if not self.session.is_authenticated:
            raise UserNotAuthenticated()

    def _require_user(self) -> UserProfile:
        user = self.session.current_user
        if user is None or not self.session.is_authenticated:
            raise UserNotAuthenticated()
        return user

    # Authentication

    async def sign_in(
        self, id_token: str, *, provider: str = "apple", nonce: str | None = None
    ) -> UserProfile:
        """Exchange a provider id token for a session and upsert the profile."""

        credentials: dict[str, Any] = {"provider": provider, "token": id_token}
        if nonce:
            credentials["nonce"] = nonce

        self.session.set_loading(True)
        try:
            response = await self._run(
                partial(self.client.auth.sign_in_with_id_token, credentials)
            )
            auth_user = getattr(response, "user", None)
            if auth_user is None:
                raise AuthenticationFailed("no user returned by provider")
            profile = _profile_from_auth_user(auth_user, provider)
            await self.save_profile(profile)
        except AuthenticationFailed:
            raise
        except Exception as exc:
            raise AuthenticationFailed(str(exc)) from exc
        finally:
            self.session.set_loading(False)

        logger.info("Signed in Supabase user %s via %s", profile.supabase_id, provider)
        return profile

    async def sign_out(self) -> None:
        """Sign out remotely; local state is only cleared once that succeeds."""

        self.session.set_loading(True)
        try:
            await self._run(self.client.auth.sign_out)
        except Exception as exc:
            raise SignOutFailed(str(exc)) from exc
        finally:
            self.session.set_loading(False)
        self.session.clear()

    async def check_session(self) -> UserProfile | None:
        try:
            session = await self._run(self.client.auth.get_session)
        except Exception as exc:
            raise AuthCheckFailed(str(exc)) from exc

        auth_user = getattr(session, "user", None)
        if auth_user is None:
            self.session.clear()
            return None
        return await self._load_user_profile(str(auth_user.id))

    async def _load_user_profile(self, supabase_id: str) -> UserProfile:
        try:
            response = await self._run(
                lambda: self.client.table(USERS_TABLE)
                .select("*")
                .eq("supabase_id", supabase_id)
                .execute()
            )
        except Exception as exc:
            raise ProfileLoadFailed(str(exc)) from exc

        rows = _rows(response)
        if not rows:
            raise UserNotFound()
        user = UserProfile.from_row(rows[0])
        self.session.set_user(user)
        return user

    def listen_for_auth_changes(
        self,
        on_error: Callable[[BaseException], None] | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Any:
        """Follow provider sign-in/sign-out events.

        supabase-py may invoke the callback from any thread, so handling is
        scheduled on ``loop`` (the running loop by default). Profile load
        failures go to ``on_error`` when given and are only logged otherwise.
        Returns the provider subscription; call ``unsubscribe()`` on it to stop.
        """

        target_loop = loop or asyncio.get_running_loop()

        def on_change(event: str, session: Any) -> None:
            if event not in _HANDLED_AUTH_EVENTS:
                return
            target_loop.call_soon_threadsafe(
                self._dispatch_auth_event, event, session, on_error
            )

        return self.client.auth.on_auth_state_change(on_change)

    def _dispatch_auth_event(
        self,
        event: str,
        session: Any,
        on_error: Callable[[BaseException], None] | None,
    ) -> None:
        if event == "SIGNED_OUT":
            self.session.clear()
            return
        auth_user = getattr(session, "user", None)
        if auth_user is None:
            return
        task = asyncio.ensure_future(self._load_user_profile(str(auth_user.id)))
        self._listener_tasks.add(task)
        task.add_done_callback(self._listener_tasks.discard)
        task.add_done_callback(partial(_report_listener_failure, on_error))

    # User profile

    async def save_profile(self, user: UserProfile) -> UserProfile:
        try:
            await self._run(
                lambda: self.client.table(USERS_TABLE)
                .upsert(user.to_row(), on_conflict="supabase_id")
                .execute()
            )
        except Exception as exc:
            raise ProfileSaveFailed(str(exc)) from exc
        self.session.set_user(user)
        return user

    async def update_preferences(self, updates: Mapping[str, Any]) -> UserProfile:
        """Write ``updates`` and reload the profile instead of merging locally.

        A reload failure after a successful write is still reported as
        ``ProfileUpdateFailed``.
        """

        user = self._require_user()
        payload = {key: encode_value(value) for key, value in updates.items()}
        try:
            await self._run(
                lambda: self.client.table(USERS_TABLE)
                .update(payload)
                .eq("supabase_id", user.supabase_id)
                .execute()
            )
            return await self._load_user_profile(user.supabase_id)
        except Exception as exc:
            raise ProfileUpdateFailed(str(exc)) from exc

    async def record_generation(self, now: datetime | None = None) -> UserProfile:
        """Count one generation against the current user's daily quota."""

        user = self._require_user()
        return await self.save_profile(increment_generation_count(user, now))

    # Video storage

    async def upload_video(
        self,
        data: bytes,
        video: VideoRecord,
        progress_callback: Callable[[float], None] | None = None,
    ) -> str:
        """Store ``data`` under the record's key and persist the metadata.

        Upload, public URL, metadata upsert and storage accounting run in
        sequence. A failure in any of them raises ``UploadFailed`` and
        leaves the earlier steps in place.
        """

        self._require_authenticated()
        try:
            # an invalid transition must fail before anything is stored
            completed = video.transition_to(VideoStatus.COMPLETED)
            if progress_callback is not None:
                progress_callback(0.0)
            await self._run(
                lambda: self.client.storage.from_(self.bucket).upload(
                    path=video.storage_key,
                    file=data,
                    file_options={"content-type": VIDEO_CONTENT_TYPE, "upsert": "true"},
                )
            )
            if progress_callback is not None:
                progress_callback(1.0)

            public_url = await self._run(
                lambda: self.client.storage.from_(self.bucket).get_public_url(
                    video.storage_key
                )
            )
            await self.save_video_metadata(completed.with_video_url(str(public_url)))

            user = self.session.current_user
            if user is not None:
                await self.save_profile(add_storage_usage(user, len(data)))
        except Exception as exc:
            raise UploadFailed(str(exc)) from exc

        logger.info(
            "Uploaded %d bytes for video %s to %s", len(data), video.id, video.storage_key
        )
        return str(public_url)

    async def download_video(self, storage_key: str) -> bytes:
        self._require_authenticated()
        try:
            return await self._run(
                lambda: self.client.storage.from_(self.bucket).download(storage_key)
            )
        except Exception as exc:
            raise DownloadFailed(str(exc)) from exc

    async def delete_video(self, storage_key: str) -> None:
        """Remove the object and its metadata row.

        ``total_storage_used`` is not decremented.
        """

        self._require_authenticated()
        try:
            await self._run(
                lambda: self.client.storage.from_(self.bucket).remove([storage_key])
            )
            await self._run(
                lambda: self.client.table(VIDEOS_TABLE)
                .delete()
                .eq("storage_key", storage_key)
                .execute()
            )
        except Exception as exc:
            raise DeleteFailed(str(exc)) from exc

    async def get_signed_url(
        self, storage_key: str, expires_in: int = DEFAULT_SIGNED_URL_EXPIRY
    ) -> str:
        self._require_authenticated()
        try:
            response = await self._run(
                lambda: self.client.storage.from_(self.bucket).create_signed_url(
                    storage_key, expires_in
                )
            )
        except Exception as exc:
            raise SignedURLFailed(str(exc)) from exc

        signed_url = None
        if isinstance(response, Mapping):
            signed_url = response.get("signedURL") or response.get("signedUrl")
        if not signed_url:
            raise SignedURLFailed("no signed URL in response")
        return signed_url

    # Video metadata

    async def save_video_metadata(self, video: VideoRecord) -> None:
        self._require_authenticated()
        try:
            await self._run(
                lambda: self.client.table(VIDEOS_TABLE)
                .upsert(video.to_row(), on_conflict="id")
                .execute()
            )
        except Exception as exc:
            raise MetadataSaveFailed(str(exc)) from exc

    async def load_user_videos(self) -> list[VideoRecord]:
        user = self._require_user()
        try:
            response = await self._run(
                lambda: self.client.table(VIDEOS_TABLE)
                .select("*")
                .eq("user_id", user.supabase_id)
                .order("created_at", desc=True)
                .execute()
            )
            return [VideoRecord.from_row(row) for row in _rows(response)]
        except Exception as exc:
            raise VideosLoadFailed(str(exc)) from exc

    async def update_video_status(
        self,
        video_id: UUID | str,
        status: VideoStatus,
        error_message: str | None = None,
    ) -> None:
        self._require_authenticated()
        updates: dict[str, Any] = {
            "status": VideoStatus(status).value,
            "updated_at": utcnow().isoformat(),
        }
        if error_message is not None:
            updates["error_message"] = error_message
        try:
            await self._run(
                lambda: self.client.table(VIDEOS_TABLE)
                .update(updates)
                .eq("id", str(video_id))
                .execute()
            )
        except Exception as exc:
            raise StatusUpdateFailed(str(exc)) from exc

    async def delete_video_metadata(self, video_id: UUID | str) -> None:
        self._require_authenticated()
        try:
            await self._run(
                lambda: self.client.table(VIDEOS_TABLE)
                .delete()
                .eq("id", str(video_id))
                .execute()
            )
        except Exception as exc:
            raise MetadataDeleteFailed(str(exc)) from exc

    async def get_storage_usage(self) -> StorageUsage:
        """Summarise the user's storage.

        ``total_size_bytes`` is an estimate (a flat size per uploaded video),
        not the measured size of the stored objects.
        """

        user = self._require_user()
        try:
            videos = await self.load_user_videos()
        except SupabaseError as exc:
            raise StorageUsageFailed(str(exc)) from exc

        uploaded = sum(1 for video in videos if video.video_url is not None)
        return StorageUsage(
            total_files=len(videos),
            total_size_bytes=uploaded * ESTIMATED_BYTES_PER_VIDEO,
            available_bytes=max_storage_bytes(user.subscription_status)
            - user.total_storage_used,
            usage_percentage=storage_usage_percentage(user),
        )


def _report_listener_failure(
    on_error: Callable[[BaseException], None] | None, task: asyncio.Task
) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        return
    if on_error is not None:
        on_error(exc)
    else:
        logger.debug("Ignoring auth listener failure: %s", exc)
