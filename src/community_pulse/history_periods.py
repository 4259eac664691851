from __future__ import annotations

import datetime as dt
import math


def parse_day(date_str: str) -> dt.date:
    return dt.date.fromisoformat(str(date_str)[:10])


def day_key(date_str: str) -> str:
    return str(date_str)[:10]


def month_key(date_str: str) -> str:
    return str(date_str)[:7]


def week_key(date_str: str) -> str:
    """
    Legacy week numbering used by every persisted history file:
      week = ceil((days_since_jan1 + weekday_of_jan1 + 1) / 7)
    with weekdays counted from Sunday = 0. Weeks therefore start on Sunday and
    week 1 may be partial; this is not ISO-8601 (see `iso_week_key`).
    """
    d = parse_day(date_str)
    jan1 = dt.date(d.year, 1, 1)
    days = (d - jan1).days
    jan1_weekday = (jan1.weekday() + 1) % 7
    week = math.ceil((days + jan1_weekday + 1) / 7)
    return f"{d.year:04d}-W{week:02d}"


def iso_week_key(date_str: str) -> str:
    year, week, _ = parse_day(date_str).isocalendar()
    return f"{year:04d}-W{week:02d}"


def parse_month_key(key: str) -> tuple[int, int]:
    s = (key or "").strip()
    if len(s) != 7 or s[4] != "-" or not s[:4].isdigit() or not s[5:].isdigit():
        raise ValueError(f"Invalid month key: {key!r} (expected YYYY-MM)")
    year, month = int(s[:4]), int(s[5:])
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month key: {key!r} (month out of range)")
    return year, month


def add_months(year: int, month: int, n: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + n
    return total // 12, total % 12 + 1


def months_between(start_key: str, end_key: str) -> int:
    y0, m0 = parse_month_key(start_key)
    y1, m1 = parse_month_key(end_key)
    return (y1 * 12 + m1) - (y0 * 12 + m0)


def format_month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def timestamp_to_date(ts: str) -> str:
    s = (ts or "").strip()
    if len(s) < 8 or not s[:8].isdigit():
        raise ValueError(f"Invalid archive timestamp: {ts!r} (expected YYYYMMDDHHMMSS)")
    return f"{s[0:4]}-{s[4:6]}-{s[6:8]}"


def utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


def iso_timestamp(now: dt.datetime) -> str:
    return now.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def retention_cutoff(now: dt.datetime, days: int) -> str:
    return (now.astimezone(dt.timezone.utc) - dt.timedelta(days=days)).date().isoformat()


def days_between(a: str, b: str) -> int:
    return (parse_day(b) - parse_day(a)).days
