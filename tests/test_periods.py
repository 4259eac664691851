from __future__ import annotations

import datetime as dt

import pytest

from community_pulse.history_periods import (
    add_months,
    iso_timestamp,
    iso_week_key,
    month_key,
    months_between,
    parse_month_key,
    retention_cutoff,
    timestamp_to_date,
    week_key,
)


def test_week_key_legacy_numbering() -> None:
    # 2024-01-01 is a Monday; weeks start on Sunday.
    assert week_key("2024-01-01") == "2024-W01"
    assert week_key("2024-01-06") == "2024-W01"
    assert week_key("2024-01-07") == "2024-W02"
    assert week_key("2024-12-31") == "2024-W53"
    assert week_key("2023-01-08") == "2023-W02"


def test_week_key_differs_from_iso() -> None:
    assert iso_week_key("2024-01-07") == "2024-W01"
    assert week_key("2024-01-07") == "2024-W02"
    # ISO puts early January into the previous year's last week.
    assert iso_week_key("2021-01-03") == "2020-W53"


def test_month_key_accepts_timestamps() -> None:
    assert month_key("2024-03-09") == "2024-03"
    assert month_key("2024-03-09T10:00:00Z") == "2024-03"


def test_add_months_carries_year() -> None:
    assert add_months(2019, 11, 1) == (2019, 12)
    assert add_months(2019, 11, 2) == (2020, 1)
    assert add_months(2019, 12, 13) == (2021, 1)


def test_months_between() -> None:
    assert months_between("2020-01", "2020-04") == 3
    assert months_between("2019-11", "2020-03") == 4


def test_parse_month_key_invalid() -> None:
    with pytest.raises(ValueError):
        parse_month_key("2020-13")
    with pytest.raises(ValueError):
        parse_month_key("2020/01")


def test_timestamp_to_date() -> None:
    assert timestamp_to_date("20191008123456") == "2019-10-08"
    with pytest.raises(ValueError):
        timestamp_to_date("2019")


def test_retention_cutoff_and_iso_timestamp() -> None:
    now = dt.datetime(2024, 3, 31, 12, 0, 0, 123456, tzinfo=dt.timezone.utc)
    assert retention_cutoff(now, 90) == "2024-01-01"
    assert iso_timestamp(now) == "2024-03-31T12:00:00.123Z"
