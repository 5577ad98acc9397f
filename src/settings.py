"""Environment configuration shared by the fal.ai and Supabase layers."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _read_int_env(name: str, default: int, *, minimum: int | None = None) -> int:
    """Return ``name`` as integer with fallback to ``default`` and ``minimum``."""

    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


def _read_float_env(
    name: str, default: float, *, minimum: float | None = None
) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


FAL_KEY = os.getenv("FAL_KEY", "")
FAL_QUEUE_BASE = os.getenv("FAL_QUEUE_BASE", "https://queue.fal.run")
FAL_MODEL_ID = os.getenv("FAL_MODEL_ID", "fal-ai/veo3")
FAL_POLL_INTERVAL_SECONDS = _read_float_env("FAL_POLL_INTERVAL", 5.0, minimum=0.0)
FAL_MAX_POLL_ATTEMPTS = _read_int_env("FAL_MAX_POLL_ATTEMPTS", 120, minimum=1)
FAL_REQUEST_TIMEOUT_SECONDS = _read_int_env("FAL_REQUEST_TIMEOUT", 30, minimum=1)

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_ANON_KEY") or ""
SUPABASE_VIDEO_BUCKET = os.getenv("SUPABASE_VIDEO_BUCKET", "user-videos")
SUPABASE_DB_URL = os.getenv("SUPABASE_DB_URL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str | int | None = None) -> None:
    """Install a single stream handler on the root logger."""

    resolved = level if level is not None else LOG_LEVEL
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root = logging.getLogger()
    root.setLevel(resolved)
    root.handlers = [handler]
