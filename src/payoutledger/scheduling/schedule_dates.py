"""Date arithmetic for recurring settlement schedules.

Day-of-week numbering follows the platform's convention: 0 is Sunday and 6 is
Saturday. All results are timezone-aware UTC datetimes; schedule runs land at
09:00 in the schedule's own timezone.
"""
from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from payoutledger.models.settlement import SettlementPeriod, ensure_utc

RUN_AT = time(9, 0)


def _shift_month(year: int, month: int, months: int, day: int) -> date:
    index = year * 12 + (month - 1) + months
    target_year, target_month = divmod(index, 12)
    target_month += 1
    last_day = calendar.monthrange(target_year, target_month)[1]
    return date(target_year, target_month, min(day, last_day))


def _at_run_time(day: date, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, RUN_AT, tzinfo=zone).astimezone(timezone.utc)


def sunday_based_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def calculate_next_schedule_date(
    period: SettlementPeriod | str,
    day_of_week: int,
    day_of_month: int,
    now: datetime,
    tz_name: str = "Asia/Seoul",
) -> datetime:
    period = SettlementPeriod(period)
    zone = ZoneInfo(tz_name)
    now = ensure_utc(now)
    local_now = now.astimezone(zone)

    if period == SettlementPeriod.DAILY:
        return _at_run_time(local_now.date() + timedelta(days=1), zone)

    if period == SettlementPeriod.WEEKLY:
        days_until = (day_of_week - sunday_based_weekday(local_now)) % 7
        return _at_run_time(local_now.date() + timedelta(days=days_until or 7), zone)

    if period == SettlementPeriod.MONTHLY:
        candidate = _at_run_time(_shift_month(local_now.year, local_now.month, 1, day_of_month), zone)
        if candidate <= now:
            candidate = _at_run_time(_shift_month(local_now.year, local_now.month, 2, day_of_month), zone)
        return candidate

    raise ValueError("Custom periods have no recurring schedule")


def calculate_period_start_date(
    period: SettlementPeriod | str,
    end_date: datetime,
    day_of_month: int = 1,
    tz_name: str = "Asia/Seoul",
) -> datetime:
    period = SettlementPeriod(period)
    end_date = ensure_utc(end_date)

    if period == SettlementPeriod.DAILY:
        return end_date - timedelta(days=1)
    if period == SettlementPeriod.WEEKLY:
        return end_date - timedelta(days=7)
    if period == SettlementPeriod.MONTHLY:
        local_end = end_date.astimezone(ZoneInfo(tz_name))
        start_day = _shift_month(local_end.year, local_end.month, -1, day_of_month)
        return datetime.combine(start_day, local_end.timetz()).astimezone(timezone.utc)

    raise ValueError("Custom periods have no recurring window")
