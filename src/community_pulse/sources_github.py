from __future__ import annotations

from urllib.parse import urlparse

from .http_client import http_get_json
from .sources_base import HttpSettings, ParseError, require_int, today_utc

GITHUB_API = "https://api.github.com"


def repo_stats_url(api_base: str, repo: str) -> str:
    return f"{api_base.rstrip('/')}/repos/{repo.strip('/')}"


def parse_repo_stats(payload: object, *, date: str, api_base: str = GITHUB_API) -> dict[str, object]:
    host = urlparse(api_base).netloc or "api.github.com"
    return {
        "date": date,
        "stars": require_int(payload, "stargazers_count"),
        "forks": require_int(payload, "forks_count"),
        # The API's `watchers_count` mirrors stars; subscribers are the real watchers.
        "watchers": require_int(payload, "subscribers_count"),
        "openIssues": require_int(payload, "open_issues_count"),
        "source": "github-api",
        "sourceDetail": host,
    }


def fetch_repo_stats(*, api_base: str, repo: str, http: HttpSettings, date: str | None = None) -> dict[str, object]:
    payload = http_get_json(
        repo_stats_url(api_base, repo),
        headers=http.github_headers(),
        timeout_s=http.timeout_s,
        ca_bundle_path=http.ca_bundle_path,
        user_agent=http.user_agent,
    )
    return parse_repo_stats(payload, date=date or today_utc(), api_base=api_base)


def parse_releases(payload: object) -> list[dict[str, object]]:
    if not isinstance(payload, list):
        raise ParseError("releases payload is not a list")
    out: list[dict[str, object]] = []
    for r in payload:
        if not isinstance(r, dict):
            continue
        out.append(
            {
                "tagName": r.get("tag_name"),
                "name": r.get("name"),
                "publishedAt": r.get("published_at"),
                "htmlUrl": r.get("html_url"),
                "prerelease": bool(r.get("prerelease", False)),
                "body": r.get("body") or "",
            }
        )
    return out


def fetch_releases(*, api_base: str, repo: str, http: HttpSettings, per_page: int = 100) -> list[dict[str, object]]:
    releases: list[dict[str, object]] = []
    page = 1
    while True:
        url = f"{repo_stats_url(api_base, repo)}/releases?per_page={per_page}&page={page}"
        payload = http_get_json(
            url,
            headers=http.github_headers(),
            timeout_s=http.timeout_s,
            ca_bundle_path=http.ca_bundle_path,
            user_agent=http.user_agent,
        )
        batch = parse_releases(payload)
        if not batch:
            break
        releases.extend(batch)
        if len(batch) < per_page:
            break
        page += 1
    return releases
