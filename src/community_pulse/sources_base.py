from __future__ import annotations

import dataclasses
import datetime as dt
import time
from typing import Callable, TypeVar

from .http_client import DEFAULT_USER_AGENT, FetchError

T = TypeVar("T")


class ParseError(ValueError):
    """The response arrived but did not have the expected shape."""


@dataclasses.dataclass(frozen=True)
class HttpSettings:
    timeout_s: int = 30
    ca_bundle_path: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    github_token: str = ""

    def github_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        if self.github_token:
            headers["Authorization"] = f"token {self.github_token}"
        return headers


@dataclasses.dataclass(frozen=True)
class SnapshotSource:
    """
    One external origin producing one normalized data point per call.

    `fetch` raises FetchError/ParseError; `fetch_or_none` turns both into None so a
    backfill loop can skip the point and move on.
    """

    name: str
    fetch: Callable[[], dict[str, object]]

    def fetch_or_none(self) -> dict[str, object] | None:
        return fetch_or_none(self.fetch, label=self.name)


def fetch_or_none(fn: Callable[[], T], *, label: str) -> T | None:
    try:
        return fn()
    except (FetchError, ParseError) as e:
        print(f"  Warning: {label}: {e}")
        return None


def polite_sleep(delay_s: float) -> None:
    # Fixed pause between sequential requests to third-party services.
    if delay_s > 0:
        time.sleep(delay_s)


def today_utc() -> str:
    return dt.datetime.now(tz=dt.timezone.utc).date().isoformat()


def require(obj: object, *path: str) -> object:
    """Walk nested dict keys, raising ParseError on the first missing one."""
    cur = obj
    walked: list[str] = []
    for key in path:
        walked.append(key)
        if not isinstance(cur, dict) or key not in cur:
            raise ParseError(f"missing field {'.'.join(walked)!r}")
        cur = cur[key]
    return cur


def require_int(obj: object, *path: str) -> int:
    v = require(obj, *path)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ParseError(f"field {'.'.join(path)!r} is not a number: {v!r}")
    return int(v)
