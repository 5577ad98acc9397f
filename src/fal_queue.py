"""fal.ai Veo 3 queue client: submit a prompt, poll it, report progress."""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

import requests
from prometheus_client import Counter, Histogram
from requests import exceptions as requests_exceptions

import settings
from records import AspectRatio, VideoResolution

logger = logging.getLogger(__name__)

FAL_QUEUE_BASE = settings.FAL_QUEUE_BASE
FAL_MODEL_ID = settings.FAL_MODEL_ID
POLL_INTERVAL_SECONDS = settings.FAL_POLL_INTERVAL_SECONDS
MAX_POLL_ATTEMPTS = settings.FAL_MAX_POLL_ATTEMPTS
REQUEST_TIMEOUT_SECONDS = settings.FAL_REQUEST_TIMEOUT_SECONDS

MIN_DURATION_SECONDS = 5.0
MAX_DURATION_SECONDS = 8.0
SUPPORTED_RESOLUTION = VideoResolution.HD720

_PENDING_STATUSES = {"in_progress", "in_queue"}

GENERATIONS = Counter(
    "veogen_generations_total", "fal.ai video generations by outcome", ["outcome"]
)
GENERATION_SECONDS = Histogram(
    "veogen_generation_seconds", "wall time of successful fal.ai generations"
)

ProgressObserver = Callable[[float, "str | None"], None]


class FalError(RuntimeError):
    """Base class for every failure of a fal.ai generation."""

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class FalValidationError(FalError):
    """Input rejected before any network call; retrying will not help."""

    retryable = False


class InvalidPrompt(FalValidationError):
    def __init__(self) -> None:
        super().__init__("Please provide a valid prompt")


class InvalidDuration(FalValidationError):
    def __init__(self, duration: float) -> None:
        super().__init__("Duration must be between 5 and 8 seconds")
        self.duration = duration


class UnsupportedResolution(FalValidationError):
    def __init__(self, resolution: object) -> None:
        super().__init__("Only 720p resolution is currently supported")
        self.resolution = resolution


class NetworkError(FalError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Network error: {detail}")
        self.detail = detail


class ApiError(FalError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class GenerationFailed(FalError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Generation failed: {reason}")
        self.reason = reason


class NoOutput(FalError):
    def __init__(self) -> None:
        super().__init__("No video output received")


class UnknownStatus(FalError):
    def __init__(self, status: str) -> None:
        super().__init__(f"Unknown generation status: {status}")
        self.status = status


class GenerationTimeout(FalError):
    def __init__(self) -> None:
        super().__init__("Generation timed out. Please try again.")


class GenerationCancelled(FalError):
    def __init__(self) -> None:
        super().__init__("Generation was cancelled")


class CancellationToken:
    """Cooperative cancellation flag checked between poll attempts."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled()


@dataclass(frozen=True)
class VideoRequest:
    prompt: str
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    duration: float = 5.0
    resolution: VideoResolution = VideoResolution.HD720

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "aspect_ratio": AspectRatio(self.aspect_ratio).value,
            "duration": self.duration,
            "resolution": VideoResolution(self.resolution).value,
        }


@dataclass(frozen=True)
class VideoFile:
    url: str
    content_type: str | None = None
    file_name: str | None = None
    file_size: int | None = None


@dataclass(frozen=True)
class Timings:
    inference: float | None = None
    total: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    video: VideoFile
    seed: int | None = None
    timings: Timings | None = None
    request_id: str | None = None

    @classmethod
    def from_payload(cls, payload: object) -> "GenerationResult | None":
        """Build a result from a fal.ai ``output`` object, ``None`` without a URL."""

        if not isinstance(payload, Mapping):
            return None
        video = _extract_video_file(payload.get("video"))
        if video is None:
            return None
        timings = None
        raw_timings = payload.get("timings")
        if isinstance(raw_timings, Mapping):
            timings = Timings(
                inference=_as_float(raw_timings.get("inference")),
                total=_as_float(raw_timings.get("total")),
            )
        return cls(video=video, seed=_first_int(payload, ["seed"]), timings=timings)


def _first_string(payload: Mapping[str, Any], keys: Sequence[str]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            stripped = value.strip()
            if stripped:
                return stripped
    return None


def _first_int(payload: Mapping[str, Any], keys: Sequence[str]) -> int | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                continue
            try:
                return int(stripped)
            except ValueError:
                try:
                    return int(float(stripped))
                except ValueError:
                    continue
    return None


def _as_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _extract_video_file(payload: object) -> VideoFile | None:
    if isinstance(payload, str):
        stripped = payload.strip()
        return VideoFile(url=stripped) if stripped else None
    if not isinstance(payload, Mapping):
        return None
    url = _first_string(payload, ["url"])
    if not url:
        return None
    return VideoFile(
        url=url,
        content_type=_first_string(payload, ["content_type", "mime_type"]),
        file_name=_first_string(payload, ["file_name", "filename"]),
        file_size=_first_int(payload, ["file_size", "size"]),
    )


def _extract_error_message(payload: Mapping[str, Any]) -> str | None:
    """Return a human readable error message from a status payload."""

    for key in ("error", "detail", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, Mapping):
            nested = _extract_error_message(value)
            if nested:
                return nested
    return None


def validate_prompt(prompt: str) -> None:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidPrompt()


def validate_parameters(duration: float, resolution: VideoResolution | str) -> None:
    """Enforce the provider's envelope before anything is sent over the wire."""

    if not MIN_DURATION_SECONDS <= duration <= MAX_DURATION_SECONDS:
        raise InvalidDuration(duration)
    try:
        resolved = VideoResolution(resolution)
    except ValueError:
        raise UnsupportedResolution(resolution) from None
    if resolved is not SUPPORTED_RESOLUTION:
        raise UnsupportedResolution(resolution)


def _headers(api_key: str, json: bool = True) -> dict[str, str]:
    headers = {}
    if api_key:
        headers["Authorization"] = f"Key {api_key}"
    if json:
        headers["Content-Type"] = "application/json"
    return headers


def _queue_request_url(base_url: str, model_id: str, *parts: str) -> str:
    """Return a fully qualified queue endpoint for *model_id* and *parts*."""

    base_path = model_id.strip("/")
    extra = "/".join(part.strip("/") for part in parts if part)
    if extra:
        return f"{base_url.rstrip('/')}/{base_path}/{extra}"
    return f"{base_url.rstrip('/')}/{base_path}"


def submit_text2video(
    model_id: str,
    request: VideoRequest,
    *,
    api_key: str = "",
    base_url: str = FAL_QUEUE_BASE,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> str:
    """Queue ``request`` on fal.ai and return the provider's request id."""

    endpoint = _queue_request_url(base_url, model_id)
    try:
        response = requests.post(
            endpoint,
            headers=_headers(api_key),
            json=request.to_payload(),
            timeout=timeout,
        )
    except requests_exceptions.RequestException as exc:
        raise NetworkError(str(exc)) from exc

    if not 200 <= response.status_code < 300:
        raise ApiError(response.status_code, response.text or "Unknown error")

    try:
        data = response.json()
    except ValueError as exc:
        raise NetworkError("Invalid response") from exc
    request_id = data.get("request_id") if isinstance(data, Mapping) else None
    if not isinstance(request_id, str) or not request_id:
        raise NetworkError("Invalid response")
    return request_id


def get_status(
    model_id: str,
    request_id: str,
    *,
    api_key: str = "",
    base_url: str = FAL_QUEUE_BASE,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    endpoint = _queue_request_url(base_url, model_id, "requests", request_id, "status")
    try:
        response = requests.get(
            endpoint, headers=_headers(api_key, json=False), timeout=timeout
        )
    except requests_exceptions.RequestException as exc:
        raise NetworkError(str(exc)) from exc

    if response.status_code != 200:
        raise NetworkError(f"Failed to check status (HTTP {response.status_code})")
    try:
        data = response.json()
    except ValueError as exc:
        raise NetworkError("Failed to check status") from exc
    if not isinstance(data, Mapping) or not isinstance(data.get("status"), str):
        raise NetworkError("Failed to check status")
    return dict(data)


class VideoGenerator:
    """Drive Veo 3 generations and publish their progress.

    ``is_generating``, ``progress`` and ``logs`` are the observable state.
    They are only written from coroutines running on the event loop, the
    blocking HTTP calls run in worker threads.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model_id: str = FAL_MODEL_ID,
        base_url: str = FAL_QUEUE_BASE,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = settings.FAL_KEY if api_key is None else api_key
        self.model_id = model_id
        self.base_url = base_url
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout = timeout

        self.is_generating = False
        self.progress = 0.0
        self.logs: list[str] = []

        self._observers: list[ProgressObserver] = []
        self._active_tokens: set[CancellationToken] = set()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        """Register ``observer`` for every progress tick; returns an unsubscriber."""

        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, progress: float, status: str | None) -> None:
        for observer in list(self._observers):
            observer(progress, status)

    def _record_tick(self, progress: float, status: str) -> None:
        self.progress = progress
        message = f"Status: {status} ({int(progress * 100)}%)"
        if not self.logs or self.logs[-1] != message:
            self.logs.append(message)
        self._notify(progress, status)

    def _settle(self, progress: float) -> None:
        self.is_generating = bool(self._active_tokens)
        self.progress = progress

    async def submit(self, request: VideoRequest) -> str:
        return await asyncio.to_thread(
            submit_text2video,
            self.model_id,
            request,
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
        )

    async def poll_until_done(
        self,
        request_id: str,
        on_progress: ProgressObserver | None = None,
        token: CancellationToken | None = None,
    ) -> GenerationResult:
        """Poll ``request_id`` until it reaches a terminal status.

        Progress is ``attempt / max_attempts``, a measure of the elapsed
        polling budget rather than anything reported by fal.ai.
        """

        token = token or CancellationToken()
        for attempt in range(self.max_attempts):
            token.raise_if_cancelled()
            payload = await asyncio.to_thread(
                get_status,
                self.model_id,
                request_id,
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
            )
            # a response landing after cancel() is stale
            token.raise_if_cancelled()

            status = payload["status"]
            progress = attempt / self.max_attempts
            self._record_tick(progress, status)
            if on_progress is not None:
                on_progress(progress, status)

            normalized = status.strip().lower()
            if normalized == "completed":
                result = GenerationResult.from_payload(payload.get("output"))
                if result is None:
                    raise NoOutput()
                return replace(result, request_id=request_id)
            if normalized == "failed":
                raise GenerationFailed(
                    _extract_error_message(payload) or "Generation failed"
                )
            if normalized not in _PENDING_STATUSES:
                raise UnknownStatus(status)

            logger.debug(
                "fal.ai request %s is %s (attempt %d/%d)",
                request_id,
                status,
                attempt + 1,
                self.max_attempts,
            )
            if attempt + 1 < self.max_attempts:
                await asyncio.sleep(self.poll_interval)

        raise GenerationTimeout()

    async def generate_video(
        self,
        prompt: str,
        aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE,
        duration: float = 5.0,
        resolution: VideoResolution = VideoResolution.HD720,
        progress_callback: ProgressObserver | None = None,
        token: CancellationToken | None = None,
    ) -> GenerationResult:
        validate_prompt(prompt)
        validate_parameters(duration, resolution)

        request = VideoRequest(
            prompt=prompt,
            aspect_ratio=AspectRatio(aspect_ratio),
            duration=duration,
            resolution=VideoResolution(resolution),
        )
        token = token or CancellationToken()
        self._active_tokens.add(token)
        self.is_generating = True
        self.progress = 0.0
        self.logs = []
        started = time.monotonic()
        succeeded = False

        try:
            request_id = await self.submit(request)
            logger.info(
                "Submitted fal.ai request %s with model %s", request_id, self.model_id
            )
            result = await self.poll_until_done(request_id, progress_callback, token)
            succeeded = True
        except (GenerationCancelled, asyncio.CancelledError):
            GENERATIONS.labels("cancelled").inc()
            logger.info("fal.ai generation cancelled")
            raise
        except FalError as exc:
            GENERATIONS.labels("failed").inc()
            logger.warning("fal.ai generation failed: %s", exc)
            raise
        finally:
            self._active_tokens.discard(token)
            # any exit other than success, including task cancellation
            if not succeeded and not self._active_tokens:
                self._settle(0.0)

        GENERATION_SECONDS.observe(time.monotonic() - started)
        GENERATIONS.labels("completed").inc()
        self._settle(1.0)
        return result

    def cancel(self) -> None:
        """Cancel every running generation and reset the observable state."""

        for token in list(self._active_tokens):
            token.cancel()
        self._active_tokens.clear()
        self.is_generating = False
        self.progress = 0.0
        self.logs = []
        self._notify(0.0, "cancelled")

    @staticmethod
    def estimated_cost(duration: float) -> float:
        """Return the USD cost estimate of a ``duration`` second video."""

        extra_seconds = max(0.0, duration - MIN_DURATION_SECONDS)
        return 0.10 + extra_seconds * 0.02

    async def simulate_generation(
        self, prompt: str, duration: float = 10.0
    ) -> GenerationResult:
        """Walk the progress state through ten steps without calling fal.ai."""

        validate_prompt(prompt)
        self.is_generating = True
        self.progress = 0.0
        self.logs = ["Starting simulation..."]

        for step in range(1, 11):
            await asyncio.sleep(duration / 10)
            self.progress = step / 10
            self.logs.append(f"Progress: {int(self.progress * 100)}%")
            self._notify(self.progress, "simulated")

        self.is_generating = False
        self.progress = 1.0
        self.logs.append("Simulation complete!")
        return GenerationResult(
            video=VideoFile(
                url="https://example.com/mock-video.mp4",
                content_type="video/mp4",
                file_name="generated_video.mp4",
                file_size=1_024_000,
            ),
            seed=12345,
            timings=Timings(inference=8.5, total=10.2),
        )
