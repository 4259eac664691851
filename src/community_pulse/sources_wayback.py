from __future__ import annotations

import dataclasses
import math
import re
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from .history_periods import timestamp_to_date
from .http_client import http_get, http_get_json
from .sources_base import HttpSettings, ParseError

WAYBACK_BASE = "https://web.archive.org"

_STARS_LABEL = re.compile(r"([0-9,]+)\s*users?\s*starred", re.I)
_FORKS_LABEL = re.compile(r"([0-9,]+)\s*users?\s*forked", re.I)
_WATCHERS_LABEL = re.compile(r"([0-9,]+)\s*users?\s*(?:are\s+)?watching", re.I)
_STARS_SOCIAL = re.compile(r'stargazers[^>]*>[\s\S]*?<[^>]*class="[^"]*social-count[^"]*"[^>]*>([0-9,.k]+)<', re.I)
_FORKS_SOCIAL = re.compile(r'network/members[^>]*>[\s\S]*?<[^>]*class="[^"]*social-count[^"]*"[^>]*>([0-9,.k]+)<', re.I)
_ISSUES_TAB = re.compile(r"issues-tab[^>]*>[\s\S]*?Counter[^>]*>([0-9,]+)<", re.I)

_REDDIT_PATTERNS = (
    re.compile(r'class="subscribers"[^>]*>\s*<span class="number">([0-9,]+)<'),
    re.compile(r'>([0-9,]+)</div><p[^>]*id="IdCard--Subscribers'),
    re.compile(r'"subscribers":\s*(\d+)'),
    re.compile(r'"subscriberCount":\s*(\d+)'),
)


@dataclasses.dataclass(frozen=True)
class ArchiveSnapshot:
    timestamp: str  # YYYYMMDDHHMMSS
    original: str

    @property
    def date(self) -> str:
        return timestamp_to_date(self.timestamp)

    def replay_url(self, wayback_base: str = WAYBACK_BASE) -> str:
        return f"{wayback_base.rstrip('/')}/web/{self.timestamp}/{self.original}"


def cdx_url(wayback_base: str, target: str, *, collapse: str = "", filters: tuple[str, ...] = ("statuscode:200",)) -> str:
    params: list[tuple[str, str]] = [("url", target), ("output", "json")]
    params.extend(("filter", f) for f in filters)
    if collapse:
        params.append(("collapse", collapse))
    return f"{wayback_base.rstrip('/')}/cdx/search/cdx?{urlencode(params)}"


def parse_cdx(payload: object, *, original: str = "") -> list[ArchiveSnapshot]:
    """
    CDX JSON is a list of rows whose first row is the header
    (urlkey, timestamp, original, ...). `original` overrides the archived URL,
    e.g. to replay a canonical form of it.
    """
    if not isinstance(payload, list):
        raise ParseError("CDX payload is not a list")
    out: list[ArchiveSnapshot] = []
    for row in payload[1:]:
        if not isinstance(row, list) or len(row) < 3:
            continue
        out.append(ArchiveSnapshot(timestamp=str(row[1]), original=original or str(row[2])))
    return out


def fetch_cdx(
    *,
    wayback_base: str,
    target: str,
    http: HttpSettings,
    collapse: str = "",
    filters: tuple[str, ...] = ("statuscode:200",),
    original: str = "",
) -> list[ArchiveSnapshot]:
    payload = http_get_json(
        cdx_url(wayback_base, target, collapse=collapse, filters=filters),
        timeout_s=http.timeout_s,
        ca_bundle_path=http.ca_bundle_path,
        user_agent=http.user_agent,
    )
    return parse_cdx(payload, original=original)


def fetch_replay(snapshot: ArchiveSnapshot, *, wayback_base: str, http: HttpSettings) -> str:
    return http_get(
        snapshot.replay_url(wayback_base),
        timeout_s=http.timeout_s,
        ca_bundle_path=http.ca_bundle_path,
        user_agent=http.user_agent,
    )


def parse_number(text: str) -> int | None:
    """'17,027' -> 17027, '1.6k' -> 1600, '2m' -> 2000000; None when unparseable."""
    cleaned = (text or "").replace(",", "").strip().lower()
    if not cleaned:
        return None
    for suffix, scale in (("k", 1_000), ("m", 1_000_000)):
        if cleaned.endswith(suffix):
            try:
                return math.floor(float(cleaned[:-1]) * scale + 0.5)
            except ValueError:
                return None
    m = re.match(r"\d+", cleaned)
    return int(m.group(0)) if m else None


def _aria_count(soup: BeautifulSoup, pattern: re.Pattern[str]) -> int | None:
    tag = soup.find(attrs={"aria-label": pattern})
    if tag is None:
        return None
    m = pattern.search(str(tag.get("aria-label", "")))
    return parse_number(m.group(1)) if m else None


def _regex_count(html: str, pattern: re.Pattern[str]) -> int | None:
    m = pattern.search(html)
    return parse_number(m.group(1)) if m else None


def extract_github_stats(html: str, timestamp: str) -> dict[str, object]:
    """
    Repo page counters from an archived page. Each field is None when no known
    markup variant matched; GitHub changed its layout several times.
    """
    soup = BeautifulSoup(html, "html.parser")
    stars = _aria_count(soup, _STARS_LABEL) or _regex_count(html, _STARS_SOCIAL)
    forks = _aria_count(soup, _FORKS_LABEL) or _regex_count(html, _FORKS_SOCIAL)
    return {
        "date": timestamp_to_date(timestamp),
        "timestamp": timestamp,
        "stars": stars,
        "forks": forks,
        "watchers": _aria_count(soup, _WATCHERS_LABEL),
        "openIssues": _regex_count(html, _ISSUES_TAB),
        "source": "wayback",
    }


def extract_reddit_subscribers(html: str) -> int | None:
    soup = BeautifulSoup(html, "html.parser")
    tag = soup.select_one("span.subscribers span.number")
    if tag is not None:
        n = parse_number(tag.get_text())
        if n is not None:
            return n
    for pattern in _REDDIT_PATTERNS:
        n = _regex_count(html, pattern)
        if n is not None:
            return n
    return None


def one_per_day(snapshots: list[ArchiveSnapshot], *, prefer: str = "old.reddit") -> list[ArchiveSnapshot]:
    # First snapshot per calendar day, replaced only by one whose URL contains `prefer`.
    by_day: dict[str, ArchiveSnapshot] = {}
    for s in snapshots:
        day = s.timestamp[:8]
        cur = by_day.get(day)
        if cur is None or (prefer in s.original and prefer not in cur.original):
            by_day[day] = s
    return sorted(by_day.values(), key=lambda s: s.timestamp)
