from __future__ import annotations

import datetime as dt
from collections import defaultdict
from typing import Callable

from .history_periods import iso_timestamp, month_key, retention_cutoff, week_key
from .history_store import dedupe_by_date, sort_by_date
from .models import History, MetricFamily, RawLog, Retention

KeyFn = Callable[[str], str]


def filter_since(entries: list[dict[str, object]], cutoff: str) -> list[dict[str, object]]:
    return [e for e in entries if str(e.get("date", "")) >= cutoff]


def group_by_period(entries: list[dict[str, object]], key_fn: KeyFn) -> dict[str, list[dict[str, object]]]:
    grouped: dict[str, list[dict[str, object]]] = defaultdict(list)
    for e in sort_by_date(entries):
        grouped[key_fn(str(e.get("date", "")))].append(e)
    return grouped


def aggregate_by_period(entries: list[dict[str, object]], key_fn: KeyFn) -> list[dict[str, object]]:
    """
    One row per bucket: the chronologically last entry of the bucket, re-dated to
    the bucket key. Metrics are cumulative counters, so the latest sample is the
    bucket's end-state value.
    """
    out: list[dict[str, object]] = []
    for key, bucket in group_by_period(entries, key_fn).items():
        row = dict(bucket[-1])
        row["date"] = key
        out.append(row)
    return sort_by_date(out)


def build_history(
    raw: RawLog,
    *,
    now: dt.datetime,
    retention: Retention,
    extra: dict[str, object] | None = None,
) -> History:
    entries = dedupe_by_date(raw.entries)
    daily = filter_since(entries, retention_cutoff(now, retention.daily_days))
    weekly = aggregate_by_period(filter_since(entries, retention_cutoff(now, retention.weekly_days)), week_key)
    monthly = aggregate_by_period(entries, month_key)
    return History(
        last_updated=iso_timestamp(now),
        daily=daily,
        weekly=weekly,
        monthly=monthly,
        extra=dict(extra or {}),
    )


def _is_unknown(v: object) -> bool:
    return v is None or v == 0


def merge_preserving(
    existing: list[dict[str, object]],
    fresh: list[dict[str, object]],
    metrics: tuple[str, ...],
) -> list[dict[str, object]]:
    existing_by_date = {str(e.get("date", "")): e for e in existing}
    fresh_by_date = {str(e.get("date", "")): e for e in fresh}

    merged: list[dict[str, object]] = []
    for date in set(existing_by_date) | set(fresh_by_date):
        cur = fresh_by_date.get(date)
        old = existing_by_date.get(date)
        if cur is None:
            merged.append(dict(old or {}))
            continue
        row = dict(cur)
        if old is not None:
            for m in metrics:
                if _is_unknown(row.get(m)) and not _is_unknown(old.get(m)):
                    row[m] = old[m]
            for k, v in old.items():
                if k not in row:
                    row[k] = v
            detail = str(old.get("sourceDetail", "") or "")
            if "+" in detail:
                row["sourceDetail"] = detail
        merged.append(row)
    return sort_by_date(merged)


def carry_forward(
    fresh: History,
    existing: History | None,
    *,
    family: MetricFamily,
    now: dt.datetime,
    retention: Retention,
) -> History:
    """
    Keep values that earlier backfill/merge passes wrote into the previous history
    file: buckets missing from the fresh aggregation survive, and sentinel fields
    in fresh rows are taken from the old row. Retention windows are re-applied.
    """
    if existing is None:
        return fresh
    daily = merge_preserving(existing.daily, fresh.daily, family.metrics)
    weekly = merge_preserving(existing.weekly, fresh.weekly, family.metrics)
    monthly = merge_preserving(existing.monthly, fresh.monthly, family.metrics)

    daily = filter_since(daily, retention_cutoff(now, retention.daily_days))
    weekly = filter_since(weekly, week_key(retention_cutoff(now, retention.weekly_days)))

    extra = dict(existing.extra)
    extra.update(fresh.extra)
    return History(last_updated=fresh.last_updated, daily=daily, weekly=weekly, monthly=monthly, extra=extra)
