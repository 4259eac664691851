from __future__ import annotations

import dataclasses
import datetime as dt
from urllib.parse import urlencode

from .history_periods import days_between, iso_week_key, parse_day
from .http_client import http_get_json
from .sources_base import HttpSettings, ParseError, polite_sleep, require

CREATORS_REPO = "teds-tech-talks/n8n-community-leaderboard"
CREATORS_FILE = "stats_aggregate_creators.json"
RAW_BASE = "https://raw.githubusercontent.com"
EXCLUDED_CREATORS = ("n8n-team", "oneclick-ai", "oneclick-it", "weblineindia")
SEARCH_RANGE_DAYS = 5
GAP_DAYS = 10


@dataclasses.dataclass(frozen=True)
class Revision:
    sha: str
    authored_at: str  # ISO timestamp from the commit author

    @property
    def date(self) -> str:
        return self.authored_at[:10]


def parse_commits(payload: object) -> list[Revision]:
    if not isinstance(payload, list):
        raise ParseError("commits payload is not a list")
    out: list[Revision] = []
    for c in payload:
        sha = require(c, "sha")
        authored = require(c, "commit", "author", "date")
        out.append(Revision(sha=str(sha), authored_at=str(authored)))
    return out


def _commits_url(api_base: str, repo: str, params: list[tuple[str, str]]) -> str:
    return f"{api_base.rstrip('/')}/repos/{repo}/commits?{urlencode(params)}"


def list_revisions(
    *,
    api_base: str,
    repo: str,
    path: str,
    http: HttpSettings,
    delay_s: float = 0.5,
    per_page: int = 100,
) -> list[Revision]:
    """Every commit touching `path`, newest first, walking pages until an empty one."""
    revisions: list[Revision] = []
    page = 1
    while True:
        print(f"Fetching commits page {page}...")
        url = _commits_url(api_base, repo, [("path", path), ("per_page", str(per_page)), ("page", str(page))])
        batch = parse_commits(
            http_get_json(
                url,
                headers=http.github_headers(),
                timeout_s=http.timeout_s,
                ca_bundle_path=http.ca_bundle_path,
                user_agent=http.user_agent,
            )
        )
        if not batch:
            break
        revisions.extend(batch)
        page += 1
        polite_sleep(delay_s)
    return revisions


def revisions_near(
    *,
    api_base: str,
    repo: str,
    path: str,
    target_date: str,
    http: HttpSettings,
    range_days: int = SEARCH_RANGE_DAYS,
) -> list[Revision]:
    target = dt.datetime.combine(parse_day(target_date), dt.time(), tzinfo=dt.timezone.utc)
    since = (target - dt.timedelta(days=range_days)).strftime("%Y-%m-%dT%H:%M:%SZ")
    until = (target + dt.timedelta(days=range_days)).strftime("%Y-%m-%dT%H:%M:%SZ")
    url = _commits_url(
        api_base, repo, [("path", path), ("per_page", "30"), ("since", since), ("until", until)]
    )
    return parse_commits(
        http_get_json(
            url,
            headers=http.github_headers(),
            timeout_s=http.timeout_s,
            ca_bundle_path=http.ca_bundle_path,
            user_agent=http.user_agent,
        )
    )


def closest_revision(revisions: list[Revision], target_date: str) -> Revision | None:
    if not revisions:
        return None
    target = dt.datetime.combine(parse_day(target_date), dt.time(), tzinfo=dt.timezone.utc)

    def distance(r: Revision) -> float:
        ts = dt.datetime.fromisoformat(r.authored_at.replace("Z", "+00:00"))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=dt.timezone.utc)
        return abs((ts - target).total_seconds())

    # min() keeps the first of equally close revisions.
    return min(revisions, key=distance)


def weekly_revisions(revisions: list[Revision]) -> list[tuple[str, Revision]]:
    """
    First revision seen per ISO week. Input is newest first, so that is the
    latest revision of each week. Returned oldest week first.
    """
    by_week: dict[str, Revision] = {}
    for r in revisions:
        by_week.setdefault(iso_week_key(r.date), r)
    return sorted(by_week.items())


def fetch_dataset(*, raw_base: str, repo: str, path: str, sha: str, http: HttpSettings) -> list[dict]:
    payload = http_get_json(
        f"{raw_base.rstrip('/')}/{repo}/{sha}/{path}",
        timeout_s=http.timeout_s,
        ca_bundle_path=http.ca_bundle_path,
        user_agent=http.user_agent,
    )
    if not isinstance(payload, list):
        raise ParseError(f"creators dataset at {sha[:7]} is not a list")
    return [c for c in payload if isinstance(c, dict)]


def _username(creator: dict) -> str:
    user = creator.get("user") if isinstance(creator.get("user"), dict) else {}
    return str(creator.get("user_username") or user.get("username") or "")


def _total(creators: list[dict], key: str) -> int:
    total = 0
    for c in creators:
        v = c.get(key)
        if v is None:
            continue
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ParseError(f"creator {_username(c)!r} has a non-numeric {key}: {v!r}")
        total += int(v)
    return total


def calculate_stats(
    creators: list[dict],
    *,
    date: str,
    sha: str,
    excluded: tuple[str, ...] = EXCLUDED_CREATORS,
) -> dict[str, object]:
    kept = [c for c in creators if _username(c) and _username(c) not in excluded]
    return {
        "date": date,
        "total": len(kept),
        "verified": sum(1 for c in kept if isinstance(c.get("user"), dict) and c["user"].get("verified")),
        "totalViews": _total(kept, "sum_unique_visitors"),
        "totalInserters": _total(kept, "sum_unique_inserters"),
        "source": "n8narena-git",
        "commitSha": sha[:7],
    }


def find_gaps(weekly: list[dict[str, object]], *, max_days: int = GAP_DAYS) -> list[tuple[str, str, int]]:
    gaps: list[tuple[str, str, int]] = []
    for prev, cur in zip(weekly, weekly[1:]):
        days = days_between(str(prev["date"]), str(cur["date"]))
        if days > max_days:
            gaps.append((str(prev["date"]), str(cur["date"]), days))
    return gaps
