from datetime import datetime, timezone

import pytest

from perkhub_api.models.subscription import BillingIntervalUnitEnum
from perkhub_api.services.subscriptions.intervals import BillingInterval, add_interval


def _at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("start", "interval", "expected"),
    [
        (_at(2024, 1, 31), BillingInterval(BillingIntervalUnitEnum.MONTH, 1), _at(2024, 2, 29)),
        (_at(2023, 1, 31), BillingInterval(BillingIntervalUnitEnum.MONTH, 1), _at(2023, 2, 28)),
        (_at(2024, 8, 31), BillingInterval(BillingIntervalUnitEnum.MONTH, 6), _at(2025, 2, 28)),
        (_at(2024, 11, 15), BillingInterval(BillingIntervalUnitEnum.MONTH, 3), _at(2025, 2, 15)),
        (_at(2024, 2, 29), BillingInterval(BillingIntervalUnitEnum.YEAR, 1), _at(2025, 2, 28)),
        (_at(2024, 5, 10), BillingInterval(BillingIntervalUnitEnum.WEEK, 2), _at(2024, 5, 24)),
        (_at(2024, 12, 31), BillingInterval(BillingIntervalUnitEnum.DAY, 1), _at(2025, 1, 1)),
    ],
)
def test_add_interval(start, interval, expected):
    assert add_interval(start, interval) == expected


def test_parse_accepts_provider_spellings():
    assert BillingInterval.parse("Month", "3") == BillingInterval(BillingIntervalUnitEnum.MONTH, 3)
    assert BillingInterval.parse("year") == BillingInterval(BillingIntervalUnitEnum.YEAR, 1)


@pytest.mark.parametrize(("unit", "count"), [(None, 1), ("fortnight", 1), ("month", 0), ("month", "x")])
def test_parse_rejects_unknown_intervals(unit, count):
    assert BillingInterval.parse(unit, count) is None
