from __future__ import annotations

import datetime as dt
from urllib.parse import quote

from .http_client import http_get_json
from .sources_base import HttpSettings, ParseError, polite_sleep, require, require_int

BLUESKY_API = "https://public.api.bsky.app"
REDDIT_BASE = "https://www.reddit.com"


def _count(obj: dict, key: str) -> int:
    v = obj.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0
    return int(v)


# Bluesky


def parse_bluesky_profile(payload: object, *, date: str) -> dict[str, object]:
    if not isinstance(payload, dict) or "handle" not in payload:
        raise ParseError("bluesky profile payload has no handle")
    return {
        "date": date,
        "followers": _count(payload, "followersCount"),
        "following": _count(payload, "followsCount"),
        "posts": _count(payload, "postsCount"),
        "source": "bluesky-api",
        "sourceDetail": "public.api.bsky.app",
    }


def bluesky_profile_extras(payload: dict, point: dict[str, object]) -> dict[str, object]:
    return {
        "handle": payload.get("handle", ""),
        "displayName": payload.get("displayName") or "",
        "description": payload.get("description") or "",
        "avatar": payload.get("avatar") or "",
        "createdAt": payload.get("createdAt") or "",
        "current": {k: point[k] for k in ("followers", "following", "posts")},
    }


def fetch_bluesky_profile(*, api_base: str, handle: str, http: HttpSettings) -> dict:
    url = f"{api_base.rstrip('/')}/xrpc/app.bsky.actor.getProfile?actor={quote(handle)}"
    payload = http_get_json(url, timeout_s=http.timeout_s, ca_bundle_path=http.ca_bundle_path, user_agent=http.user_agent)
    if not isinstance(payload, dict):
        raise ParseError("bluesky profile payload is not an object")
    return payload


# Reddit


def count_last_24h(posts: list[dict], *, now_ts: float) -> tuple[int, int]:
    """(posts, comments on those posts) created within 24h of `now_ts`."""
    day_ago = now_ts - 86400
    recent = [p for p in posts if isinstance(p.get("created_utc"), (int, float)) and p["created_utc"] >= day_ago]
    return len(recent), sum(_count(p, "num_comments") for p in recent)


def parse_listing(payload: object) -> list[dict]:
    children = require(payload, "data", "children")
    if not isinstance(children, list):
        raise ParseError("reddit listing children is not a list")
    return [c["data"] for c in children if isinstance(c, dict) and isinstance(c.get("data"), dict)]


def parse_reddit_snapshot(about: object, listing: object, *, date: str, now_ts: float) -> dict[str, object]:
    info = require(about, "data")
    subscribers = require_int(info, "subscribers")
    # Zero means "not reported" for both fields.
    active = _count(info, "active_user_count") or _count(info, "accounts_active") or None  # type: ignore[arg-type]
    posts, comments = count_last_24h(parse_listing(listing), now_ts=now_ts)
    return {
        "date": date,
        "subscribers": subscribers,
        "activeUsers": active,
        "postsLast24h": posts,
        "commentsLast24h": comments,
        "source": "reddit-api",
        "sourceDetail": "reddit.com",
    }


def reddit_extras(about: dict, point: dict[str, object]) -> dict[str, object]:
    info = about.get("data") or {}
    created = info.get("created_utc")
    created_iso = ""
    if isinstance(created, (int, float)):
        created_iso = dt.datetime.fromtimestamp(created, tz=dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
    return {
        "subreddit": info.get("display_name_prefixed", ""),
        "description": info.get("public_description") or "",
        "created": created_iso,
        "current": {"subscribers": point["subscribers"], "activeUsers": point["activeUsers"]},
    }


def fetch_reddit(*, base: str, subreddit: str, http: HttpSettings, delay_s: float = 1.0) -> tuple[dict, dict]:
    root = f"{base.rstrip('/')}/r/{subreddit}"
    kw = {"timeout_s": http.timeout_s, "ca_bundle_path": http.ca_bundle_path, "user_agent": http.user_agent}
    about = http_get_json(f"{root}/about.json", **kw)
    polite_sleep(delay_s)
    listing = http_get_json(f"{root}/new.json?limit=100", **kw)
    if not isinstance(about, dict) or not isinstance(listing, dict):
        raise ParseError("reddit payload is not an object")
    return about, listing
