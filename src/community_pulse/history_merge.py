from __future__ import annotations

import csv
import dataclasses
from pathlib import Path

from .history_aggregate import KeyFn, group_by_period


@dataclasses.dataclass(frozen=True)
class Divergence:
    date: str
    field: str
    primary: int
    secondary: int
    calibrated: int

    @property
    def diff(self) -> int:
        return self.primary - self.calibrated


@dataclasses.dataclass
class MergeReport:
    offsets: dict[str, int] = dataclasses.field(default_factory=dict)
    filled: dict[str, int] = dataclasses.field(default_factory=dict)
    compared: dict[str, int] = dataclasses.field(default_factory=dict)
    divergences: list[Divergence] = dataclasses.field(default_factory=list)

    @property
    def filled_total(self) -> int:
        return sum(self.filled.values())


@dataclasses.dataclass(frozen=True)
class DivergenceThreshold:
    abs_diff: int = 20
    pct_diff: float | None = None

    def exceeded(self, primary: int, calibrated: int) -> bool:
        diff = abs(primary - calibrated)
        if diff > self.abs_diff:
            return True
        if self.pct_diff is not None and primary:
            return diff / abs(primary) > self.pct_diff
        return False


def first_per_bucket(entries: list[dict[str, object]], key_fn: KeyFn) -> dict[str, dict[str, object]]:
    # Earliest entry per bucket (closest to the bucket start).
    return {key: bucket[0] for key, bucket in group_by_period(entries, key_fn).items()}


def cumulative_open_from_csv(path: Path) -> dict[str, dict[str, int]]:
    """
    Rows of `month,opened,closed` (header skipped) in chronological order become
    month -> {openIssues, issuesOpened, issuesClosed} with openIssues the running
    sum of opened - closed.
    """
    out: dict[str, dict[str, int]] = {}
    running = 0
    with path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            return out
        for row in reader:
            if not row or not row[0].strip():
                continue
            if len(row) < 3:
                raise ValueError(f"malformed issues CSV row: {row!r}")
            month = row[0].strip()
            opened = int(row[1])
            closed = int(row[2])
            running += opened - closed
            out[month] = {"openIssues": running, "issuesOpened": opened, "issuesClosed": closed}
    return out


def find_calibration_key(entries: list[dict[str, object]], field: str, *, source: str) -> str | None:
    for e in entries:
        v = e.get(field)
        if e.get("source") == source and isinstance(v, (int, float)) and v > 0:
            return str(e.get("date", ""))
    return None


def calibration_offsets(
    primary: list[dict[str, object]],
    secondary: dict[str, dict[str, object]],
    *,
    fields: tuple[str, ...],
    calibration_key: str | None,
) -> dict[str, int]:
    """offset = primary[key] - secondary[key] per field; 0 when either side is absent."""
    offsets = {f: 0 for f in fields}
    if not calibration_key:
        return offsets
    p = next((e for e in primary if str(e.get("date", "")) == calibration_key), None)
    s = secondary.get(calibration_key)
    if p is None or s is None:
        return offsets
    for f in fields:
        pv, sv = p.get(f), s.get(f)
        if pv is None or sv is None:
            continue
        offsets[f] = int(pv) - int(sv)  # type: ignore[arg-type]
    return offsets


def add_provenance(detail: str, marker: str) -> str:
    d = (detail or "").strip()
    if not d:
        return marker
    if marker in d.split("+"):
        return d
    return f"{d}+{marker}"


def merge_series(
    primary: list[dict[str, object]],
    secondary: dict[str, dict[str, object]],
    *,
    fields: tuple[str, ...],
    source_name: str,
    calibration_key: str | None = None,
    sentinel: object = 0,
    threshold: DivergenceThreshold | None = None,
) -> MergeReport:
    """
    Fill sentinel fields of `primary` (mutated in place) from calibrated
    `secondary` values keyed by date. Populated primary values are never
    overwritten; disagreements beyond `threshold` are only reported.
    """
    threshold = threshold or DivergenceThreshold()
    report = MergeReport(
        offsets=calibration_offsets(primary, secondary, fields=fields, calibration_key=calibration_key),
        filled={f: 0 for f in fields},
        compared={f: 0 for f in fields},
    )

    for entry in primary:
        date = str(entry.get("date", ""))
        sec = secondary.get(date)
        if sec is None:
            continue
        filled_any = False
        for f in fields:
            raw = sec.get(f)
            if raw is None:
                continue
            calibrated = int(raw) + report.offsets[f]  # type: ignore[arg-type]
            cur = entry.get(f)
            if cur is None or cur == sentinel:
                # Counters are never negative.
                entry[f] = max(0, calibrated)
                report.filled[f] += 1
                filled_any = True
                continue
            report.compared[f] += 1
            if threshold.exceeded(int(cur), calibrated):  # type: ignore[arg-type]
                report.divergences.append(
                    Divergence(date=date, field=f, primary=int(cur), secondary=int(raw), calibrated=calibrated)  # type: ignore[arg-type]
                )
        if filled_any:
            base = str(entry.get("sourceDetail", "") or entry.get("source", "") or "")
            entry["sourceDetail"] = add_provenance(base, source_name)
    return report


def format_divergence_table(divergences: list[Divergence]) -> str:
    lines = [
        "Date       | Field        | Primary  | Secondary | Calibrated | Diff",
        "-----------|--------------|----------|-----------|------------|------",
    ]
    for d in divergences:
        lines.append(
            f"{d.date:<10} | {d.field:<12} | {d.primary:>8} | {d.secondary:>9} | {d.calibrated:>10} | {d.diff}"
        )
    return "\n".join(lines)
