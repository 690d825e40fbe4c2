from datetime import datetime, timedelta, timezone

from perkhub_api.models.subscription import Subscription, SubscriptionStatusEnum
from perkhub_api.models.voucher import Voucher, VoucherStatusEnum
from perkhub_api.services.vouchers.expiration import (
    as_utc,
    effective_voucher_status,
    is_expired,
    is_subscription_lapsed,
)


NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def test_expiry_boundary_is_inclusive():
    assert is_expired(NOW, NOW)
    assert not is_expired(NOW + timedelta(seconds=1), NOW)
    assert not is_expired(None, NOW)


def test_naive_timestamps_are_treated_as_utc():
    naive = datetime(2024, 5, 10, 12, 0)
    assert as_utc(naive) == NOW
    assert is_expired(naive, NOW)


def test_effective_status_only_rewrites_open_vouchers():
    past = NOW - timedelta(minutes=1)
    assert effective_voucher_status(Voucher(status=VoucherStatusEnum.PENDING, expires_at=past), NOW) == VoucherStatusEnum.EXPIRED
    assert effective_voucher_status(Voucher(status=VoucherStatusEnum.VERIFIED, expires_at=past), NOW) == VoucherStatusEnum.EXPIRED
    assert effective_voucher_status(Voucher(status=VoucherStatusEnum.USED, expires_at=past), NOW) == VoucherStatusEnum.USED
    future = NOW + timedelta(hours=1)
    assert effective_voucher_status(Voucher(status=VoucherStatusEnum.PENDING, expires_at=future), NOW) == VoucherStatusEnum.PENDING


def test_subscription_lapse():
    active = Subscription(status=SubscriptionStatusEnum.ACTIVE, expires_at=NOW + timedelta(days=1))
    assert not is_subscription_lapsed(active, NOW)
    assert is_subscription_lapsed(active, NOW + timedelta(days=1))

    open_ended = Subscription(status=SubscriptionStatusEnum.ACTIVE, expires_at=None)
    assert not is_subscription_lapsed(open_ended, NOW)

    inactive = Subscription(status=SubscriptionStatusEnum.INACTIVE, expires_at=NOW + timedelta(days=30))
    assert is_subscription_lapsed(inactive, NOW)
