"""Daily generation and storage quotas derived from a user's subscription.

Every function here is pure: profiles are never mutated, updated copies are
returned instead.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime

from records import SubscriptionTier, UserProfile, utcnow

_DAILY_LIMITS = {
    SubscriptionTier.FREE: 3,
    SubscriptionTier.PREMIUM: 50,
    SubscriptionTier.TRIAL: 50,
    SubscriptionTier.EXPIRED: 1,
}

_STORAGE_LIMITS = {
    SubscriptionTier.FREE: 500_000_000,
    SubscriptionTier.PREMIUM: 5_000_000_000,
    SubscriptionTier.TRIAL: 5_000_000_000,
    SubscriptionTier.EXPIRED: 100_000_000,
}

NEAR_LIMIT_THRESHOLD = 0.8


@dataclass(frozen=True)
class StorageUsage:
    total_files: int
    total_size_bytes: int
    available_bytes: int
    usage_percentage: float

    @property
    def formatted_total_size(self) -> str:
        return format_bytes(self.total_size_bytes)

    @property
    def formatted_available_size(self) -> str:
        return format_bytes(self.available_bytes)


def daily_generation_limit(tier: SubscriptionTier | str) -> int:
    return _DAILY_LIMITS[SubscriptionTier(tier)]


def max_storage_bytes(tier: SubscriptionTier | str) -> int:
    return _STORAGE_LIMITS[SubscriptionTier(tier)]


def _calendar_day(moment: datetime, reference: datetime) -> date:
    """Return the day of ``moment`` as seen from ``reference``'s timezone."""

    if moment.tzinfo is not None and reference.tzinfo is not None:
        return moment.astimezone(reference.tzinfo).date()
    return moment.date()


def needs_daily_reset(account: UserProfile, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return now.date() > _calendar_day(account.last_daily_reset, now)


def can_generate_video(account: UserProfile, now: datetime | None = None) -> bool:
    if needs_daily_reset(account, now):
        # the counter is reset by the next increment
        return True
    return account.daily_generation_count < daily_generation_limit(
        account.subscription_status
    )


def remaining_generations_today(account: UserProfile) -> int:
    limit = daily_generation_limit(account.subscription_status)
    return max(0, limit - account.daily_generation_count)


def apply_daily_reset_if_needed(
    account: UserProfile, now: datetime | None = None
) -> UserProfile:
    now = now or utcnow()
    if not needs_daily_reset(account, now):
        return account
    return replace(account, daily_generation_count=0, last_daily_reset=now)


def increment_generation_count(
    account: UserProfile, now: datetime | None = None
) -> UserProfile:
    now = now or utcnow()
    account = apply_daily_reset_if_needed(account, now)
    return replace(
        account,
        daily_generation_count=account.daily_generation_count + 1,
        videos_generated=account.videos_generated + 1,
        last_generation_at=now,
    )


def add_storage_usage(account: UserProfile, num_bytes: int) -> UserProfile:
    return replace(account, total_storage_used=account.total_storage_used + num_bytes)


def storage_usage_percentage(account: UserProfile) -> float:
    limit = float(max_storage_bytes(account.subscription_status))
    return min(account.total_storage_used / limit, 1.0)


def is_storage_near_limit(account: UserProfile) -> bool:
    return storage_usage_percentage(account) > NEAR_LIMIT_THRESHOLD


def is_storage_at_limit(account: UserProfile) -> bool:
    return storage_usage_percentage(account) >= 1.0


def format_bytes(num_bytes: int) -> str:
    """Format ``num_bytes`` in MB or GB (decimal units)."""

    if abs(num_bytes) >= 1_000_000_000:
        return f"{num_bytes / 1_000_000_000:.2f} GB"
    return f"{num_bytes / 1_000_000:.1f} MB"
