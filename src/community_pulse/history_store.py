from __future__ import annotations

import json
from pathlib import Path

from .models import History, RawLog


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def read_json(path: Path) -> object:
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, data: object) -> None:
    ensure_dir(path.parent)
    path.write_text(json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False) + "\n", encoding="utf-8")


def sort_by_date(entries: list[dict[str, object]]) -> list[dict[str, object]]:
    return sorted(entries, key=lambda e: str(e.get("date", "")))


def load_raw_log(path: Path) -> RawLog:
    """
    A missing file is an empty log. A malformed file raises (json.JSONDecodeError
    or ValueError) so the run aborts before anything is overwritten.
    """
    if not path.exists():
        return RawLog()
    data = read_json(path)
    if not isinstance(data, dict) or not isinstance(data.get("entries", []), list):
        raise ValueError(f"malformed raw log (expected {{'entries': [...]}}): {path}")
    return RawLog(entries=sort_by_date(list(data.get("entries") or [])))


def dedupe_by_date(entries: list[dict[str, object]]) -> list[dict[str, object]]:
    # Later entries win for the same date.
    by_date: dict[str, dict[str, object]] = {}
    for e in entries:
        by_date[str(e.get("date", ""))] = e
    return sort_by_date(list(by_date.values()))


def upsert(log: RawLog, point: dict[str, object]) -> RawLog:
    if not str(point.get("date", "") or ""):
        raise ValueError("data point is missing 'date'")
    log.entries = dedupe_by_date([*log.entries, dict(point)])
    return log


def upsert_all(log: RawLog, points: list[dict[str, object]]) -> RawLog:
    for p in points:
        upsert(log, p)
    return log


def save_raw_log(path: Path, log: RawLog) -> None:
    log.entries = sort_by_date(log.entries)
    write_json(path, log.to_json())


def load_history(path: Path) -> History | None:
    if not path.exists():
        return None
    data = read_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"malformed history file (expected an object): {path}")
    return History.from_json(data)


def save_history(path: Path, history: History) -> None:
    write_json(path, history.to_json())
