"""Read-time expiration predicates for vouchers and subscriptions."""

from __future__ import annotations

from datetime import datetime, timezone

from perkhub_api.models.subscription import Subscription, SubscriptionStatusEnum
from perkhub_api.models.voucher import Voucher, VoucherStatusEnum


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps as UTC (SQLite drops tzinfo on the way back)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    if expires_at is None:
        return False
    return as_utc(now) >= as_utc(expires_at)


def effective_voucher_status(voucher: Voucher, now: datetime) -> VoucherStatusEnum:
    """Status a reader should see, applying expiration without writing it back."""

    status = VoucherStatusEnum(voucher.status)
    if status in (VoucherStatusEnum.PENDING, VoucherStatusEnum.VERIFIED) and is_expired(voucher.expires_at, now):
        return VoucherStatusEnum.EXPIRED
    return status


def is_subscription_lapsed(subscription: Subscription, now: datetime) -> bool:
    """Inactive subscriptions, and any subscription past its expiry, are lapsed."""

    if SubscriptionStatusEnum(subscription.status) == SubscriptionStatusEnum.INACTIVE:
        return True
    return is_expired(subscription.expires_at, now)


__all__ = ["as_utc", "effective_voucher_status", "is_expired", "is_subscription_lapsed"]
