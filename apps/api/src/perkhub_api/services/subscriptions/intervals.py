"""Billing interval arithmetic."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta

from perkhub_api.models.subscription import BillingIntervalUnitEnum


@dataclass(frozen=True, slots=True)
class BillingInterval:
    unit: BillingIntervalUnitEnum
    count: int = 1

    @classmethod
    def parse(cls, unit: str | None, count: int | str | None = 1) -> BillingInterval | None:
        """Build an interval from provider strings; unknown units yield ``None``."""

        if not unit:
            return None
        try:
            parsed_unit = BillingIntervalUnitEnum(str(unit).strip().lower())
        except ValueError:
            return None
        try:
            parsed_count = int(count) if count is not None else 1
        except (TypeError, ValueError):
            return None
        if parsed_count < 1:
            return None
        return cls(unit=parsed_unit, count=parsed_count)


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_interval(start: datetime, interval: BillingInterval) -> datetime:
    """Return ``start`` advanced by ``interval``; months clamp to the month end."""

    if interval.unit == BillingIntervalUnitEnum.DAY:
        return start + timedelta(days=interval.count)
    if interval.unit == BillingIntervalUnitEnum.WEEK:
        return start + timedelta(weeks=interval.count)
    if interval.unit == BillingIntervalUnitEnum.MONTH:
        return _add_months(start, interval.count)
    return _add_months(start, 12 * interval.count)


__all__ = ["BillingInterval", "add_interval"]
