from __future__ import annotations

import math
from pathlib import Path

from .history_periods import add_months, format_month_key, months_between, parse_month_key, week_key
from .history_store import read_json, sort_by_date

INTERPOLATED = "interpolated"


def load_anchors(path: Path) -> list[dict[str, object]]:
    """
    Anchor file shape: {"anchors": [{"date": "YYYY-MM", <metric>: n, ..., "source": "..."}]}
    (a bare list is accepted too). Anchors are returned sorted by month.
    """
    data = read_json(path)
    rows = data.get("anchors") if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ValueError(f"anchor file has no anchor list: {path}")
    out: list[dict[str, object]] = []
    for r in rows:
        if not isinstance(r, dict):
            raise ValueError(f"anchor is not an object: {r!r}")
        parse_month_key(str(r.get("date", "")))
        out.append(dict(r))
    return sort_by_date(out)


def upsert_anchor(anchors: list[dict[str, object]], point: dict[str, object]) -> list[dict[str, object]]:
    date = str(point.get("date", ""))
    kept = [a for a in anchors if str(a.get("date", "")) != date]
    kept.append(dict(point))
    return sort_by_date(kept)


def _lerp(a: object, b: object, ratio: float) -> int:
    lo = float(a)  # type: ignore[arg-type]
    hi = float(b)  # type: ignore[arg-type]
    # Half-up, so .5 never rounds to even.
    return math.floor(lo + (hi - lo) * ratio + 0.5)


def interpolate_monthly(
    anchors: list[dict[str, object]],
    *,
    metrics: tuple[str, ...],
    nullable: frozenset[str] = frozenset(),
    source: str = INTERPOLATED,
) -> list[dict[str, object]]:
    """
    Dense monthly series from sparse anchors. For a pair spanning `gap` months,
    interior month m (1 <= m < gap) gets round(cur + (next - cur) * m / gap) per
    metric. A nullable metric stays None across a pair when either end is None.
    Anchors are emitted unchanged.
    """
    ordered = sort_by_date([dict(a) for a in anchors])
    if len(ordered) < 2:
        return ordered

    out: list[dict[str, object]] = []
    for cur, nxt in zip(ordered, ordered[1:]):
        out.append(cur)
        gap = months_between(str(cur["date"]), str(nxt["date"]))
        if gap <= 0:
            raise ValueError(f"duplicate anchor month: {cur['date']}")
        year, month = parse_month_key(str(cur["date"]))
        for m in range(1, gap):
            ratio = m / gap
            y, mo = add_months(year, month, m)
            point: dict[str, object] = {"date": format_month_key(y, mo)}
            for name in metrics:
                a, b = cur.get(name), nxt.get(name)
                if a is None or b is None:
                    if name not in nullable:
                        raise ValueError(f"anchor {cur['date']} or {nxt['date']} is missing {name!r}")
                    point[name] = None
                else:
                    point[name] = _lerp(a, b, ratio)
            point["source"] = source
            out.append(point)
    out.append(ordered[-1])
    return out


def weekly_from_monthly(monthly: list[dict[str, object]]) -> list[dict[str, object]]:
    # Each month lands in the week containing its 15th.
    out: list[dict[str, object]] = []
    for p in monthly:
        row = dict(p)
        row["date"] = week_key(f"{p['date']}-15")
        out.append(row)
    return out
