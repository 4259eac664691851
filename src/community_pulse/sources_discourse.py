from __future__ import annotations

from urllib.parse import urlparse

from .http_client import http_get_json
from .sources_base import HttpSettings, SnapshotSource, require, require_int, today_utc

DISCOURSE_BASE = "https://community.n8n.io"


def parse_about(payload: object, *, date: str, base: str = DISCOURSE_BASE) -> dict[str, object]:
    """
    `/about.json` -> one community data point. `users_count` is absent on some
    forum configurations, so it maps to None instead of failing the snapshot.
    """
    stats = require(payload, "about", "stats")
    users = stats.get("users_count") if isinstance(stats, dict) else None
    return {
        "date": date,
        "users": int(users) if isinstance(users, (int, float)) and not isinstance(users, bool) else None,
        "topics": require_int(stats, "topics_count"),
        "posts": require_int(stats, "posts_count"),
        "likes": require_int(stats, "likes_count"),
        "source": "discourse-api",
        "sourceDetail": urlparse(base).netloc or base,
    }


def fetch_about(*, base: str, http: HttpSettings, date: str | None = None) -> dict[str, object]:
    payload = http_get_json(
        f"{base.rstrip('/')}/about.json",
        timeout_s=http.timeout_s,
        ca_bundle_path=http.ca_bundle_path,
        user_agent=http.user_agent,
    )
    return parse_about(payload, date=date or today_utc(), base=base)


def discourse_source(*, base: str, http: HttpSettings) -> SnapshotSource:
    return SnapshotSource(name="discourse-api", fetch=lambda: fetch_about(base=base, http=http))
