from __future__ import annotations

import datetime as dt
import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import pytest

from community_pulse.config import PipelineConfig
from community_pulse.pipeline import (
    backfill_community,
    backfill_creators,
    backfill_github_wayback,
    backfill_reddit_wayback,
    fill_creator_gaps,
    merge_issues,
    merge_wayback,
    update_events,
    update_github,
)


def _serve(routes: dict[str, object], seen: list[str] | None = None) -> HTTPServer:
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            if seen is not None:
                seen.append(self.path)
            route = routes.get(self.path, (404, "not found"))
            code, body = route() if callable(route) else route
            self.send_response(code)
            self.end_headers()
            self.wfile.write(body.encode("utf-8"))

        def log_message(self, fmt: str, *args: object) -> None:
            return

    server = HTTPServer(("127.0.0.1", 0), Handler)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    return server


def _repo(stars: int) -> str:
    return json.dumps({"stargazers_count": stars, "forks_count": 40, "subscribers_count": 9, "open_issues_count": 7})


def _read(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def test_github_job_keeps_raw_log_and_backfilled_months(tmp_path: Path) -> None:
    routes = {
        "/repos/o/r": (200, _repo(100)),
        "/repos/o/r/releases?per_page=100&page=1": (200, json.dumps([{"tag_name": "v1", "published_at": "2024-01-01T00:00:00Z"}])),
    }
    server = _serve(routes)
    base = f"http://127.0.0.1:{server.server_port}"
    cfg = PipelineConfig(data_dir=tmp_path, github_api_base=base, github_repo="o/r", request_delay_s=0)

    (tmp_path / "github-history.json").write_text(
        json.dumps(
            {
                "lastUpdated": "old",
                "daily": [],
                "weekly": [],
                "monthly": [{"date": "2019-10", "stars": 50, "forks": 7, "watchers": 0, "openIssues": 0, "sourceDetail": "ossinsight+wayback"}],
            }
        ),
        encoding="utf-8",
    )
    try:
        assert update_github(cfg, now=dt.datetime(2024, 3, 30, 6, tzinfo=dt.timezone.utc)) == 0
        routes["/repos/o/r"] = (200, _repo(110))
        assert update_github(cfg, now=dt.datetime(2024, 3, 30, 18, tzinfo=dt.timezone.utc)) == 0
        routes["/repos/o/r"] = (200, _repo(120))
        assert update_github(cfg, now=dt.datetime(2024, 3, 31, 6, tzinfo=dt.timezone.utc)) == 0
    finally:
        server.shutdown()

    raw = _read(tmp_path / "github-raw-log.json")["entries"]
    assert [(e["date"], e["stars"]) for e in raw] == [("2024-03-30", 110), ("2024-03-31", 120)]

    history = _read(tmp_path / "github-history.json")
    assert history["lastUpdated"] == "2024-03-31T06:00:00.000Z"
    assert [d["stars"] for d in history["daily"]] == [110, 120]
    assert [(m["date"], m["stars"]) for m in history["monthly"]] == [("2019-10", 50), ("2024-03", 120)]
    assert history["monthly"][0]["sourceDetail"] == "ossinsight+wayback"

    releases = _read(tmp_path / "github-releases.json")["releases"]
    assert releases[0]["tagName"] == "v1"


def test_github_job_fails_on_unreachable_api(tmp_path: Path) -> None:
    from community_pulse.http_client import FetchError

    server = _serve({})
    cfg = PipelineConfig(data_dir=tmp_path, github_api_base=f"http://127.0.0.1:{server.server_port}", github_repo="o/r")
    try:
        with pytest.raises(FetchError):
            update_github(cfg)
    finally:
        server.shutdown()
    assert not (tmp_path / "github-raw-log.json").exists()


def test_merge_issues_calibrates_and_fills(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "github-history.json").write_text(
        json.dumps(
            {
                "lastUpdated": "old",
                "daily": [],
                "weekly": [],
                "monthly": [
                    {"date": "2022-01", "stars": 1, "forks": 1, "watchers": 1, "openIssues": 0, "source": "ossinsight", "sourceDetail": "ossinsight"},
                    {"date": "2022-02", "stars": 2, "forks": 1, "watchers": 1, "openIssues": 500, "source": "github-api", "sourceDetail": "api.github.com"},
                ],
            }
        ),
        encoding="utf-8",
    )
    csv_path = tmp_path / "issues.csv"
    csv_path.write_text("month,opened,closed\n2022-01,600,200\n2022-02,180,100\n", encoding="utf-8")
    cfg = PipelineConfig(data_dir=tmp_path, issues_csv_path=csv_path)

    assert merge_issues(cfg, now=dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)) == 0

    monthly = _read(tmp_path / "github-history.json")["monthly"]
    # cumulative 400 then 480; offset 500 - 480 = 20.
    assert monthly[0]["openIssues"] == 420
    assert monthly[0]["sourceDetail"] == "ossinsight+bigquery"
    assert monthly[1]["openIssues"] == 500
    assert "offset +20" in capsys.readouterr().out


def test_merge_wayback_fills_zero_fields(tmp_path: Path) -> None:
    (tmp_path / "seed").mkdir()
    (tmp_path / "seed" / "github-wayback.json").write_text(
        json.dumps(
            {
                "data": [
                    {"date": "2019-10-08", "timestamp": "20191008000000", "stars": 5000, "forks": 300, "watchers": None, "openIssues": 60},
                    {"date": "2019-10-28", "timestamp": "20191028000000", "stars": 5500, "forks": 999, "watchers": 80, "openIssues": 70},
                ]
            }
        ),
        encoding="utf-8",
    )
    (tmp_path / "github-history.json").write_text(
        json.dumps(
            {
                "lastUpdated": "old",
                "daily": [],
                "weekly": [],
                "monthly": [{"date": "2019-10", "stars": 5100, "forks": 0, "watchers": 0, "openIssues": 0, "sourceDetail": "api.ossinsight.io"}],
            }
        ),
        encoding="utf-8",
    )
    assert merge_wayback(PipelineConfig(data_dir=tmp_path)) == 0
    m = _read(tmp_path / "github-history.json")["monthly"][0]
    assert (m["stars"], m["forks"], m["watchers"], m["openIssues"]) == (5100, 300, 0, 60)
    assert m["sourceDetail"] == "api.ossinsight.io+wayback"


def test_backfill_community_without_live_stats(tmp_path: Path) -> None:
    anchors = tmp_path / "anchors.json"
    anchors.write_text(
        json.dumps({"anchors": [{"date": "2023-01", "users": 100, "topics": 10, "posts": 10, "likes": 10}, {"date": "2023-04", "users": 400, "topics": 40, "posts": 40, "likes": 40}]}),
        encoding="utf-8",
    )
    (tmp_path / "community-history.json").write_text(
        json.dumps({"lastUpdated": "old", "daily": [{"date": "2024-01-01", "users": 1}], "weekly": [], "monthly": []}),
        encoding="utf-8",
    )
    server = _serve({})
    cfg = PipelineConfig(data_dir=tmp_path, anchors_path=anchors, discourse_base=f"http://127.0.0.1:{server.server_port}")
    try:
        assert backfill_community(cfg, now=dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc)) == 0
    finally:
        server.shutdown()

    history = _read(tmp_path / "community-history.json")
    assert [m["users"] for m in history["monthly"]] == [100, 200, 300, 400]
    assert history["daily"] == [{"date": "2024-01-01", "users": 1}]
    assert history["weekly"][0]["date"] == "2023-W03"


def test_backfill_reddit_wayback_adds_only_new_days(tmp_path: Path) -> None:
    header = ["urlkey", "timestamp", "original", "mimetype", "statuscode", "digest", "length"]
    cdx_new = json.dumps([header, ["k", "20240101010101", "https://www.reddit.com/r/n8n/", "text/html", "200", "d", "1"]])
    cdx_old = json.dumps(
        [
            header,
            ["k", "20240101120000", "http://old.reddit.com/r/n8n", "text/html", "200", "d", "1"],
            ["k", "20240102120000", "http://old.reddit.com/r/n8n", "text/html", "200", "d", "1"],
        ]
    )
    routes = {
        "/cdx/search/cdx?url=reddit.com%2Fr%2Fn8n&output=json&filter=statuscode%3A200&filter=mimetype%3Atext%2Fhtml": (200, cdx_new),
        "/cdx/search/cdx?url=old.reddit.com%2Fr%2Fn8n&output=json&filter=statuscode%3A200&filter=mimetype%3Atext%2Fhtml": (200, cdx_old),
        "/web/20240101120000/https://old.reddit.com/r/n8n/": (200, '<span class="subscribers"><span class="number">1,200</span></span>'),
        "/web/20240102120000/https://old.reddit.com/r/n8n/": (200, '<span class="subscribers"><span class="number">1,300</span></span>'),
    }
    raw_path = tmp_path / "history" / "reddit-raw-log.json"
    raw_path.parent.mkdir(parents=True)
    raw_path.write_text(
        json.dumps({"entries": [{"date": "2024-01-02", "subscribers": 1310, "activeUsers": 5, "postsLast24h": 3, "commentsLast24h": 4}]}),
        encoding="utf-8",
    )
    server = _serve(routes)
    cfg = PipelineConfig(data_dir=tmp_path, wayback_base=f"http://127.0.0.1:{server.server_port}", request_delay_s=0)
    try:
        assert backfill_reddit_wayback(cfg, now=dt.datetime(2024, 1, 3, tzinfo=dt.timezone.utc)) == 0
    finally:
        server.shutdown()

    entries = json.loads(raw_path.read_text(encoding="utf-8"))["entries"]
    assert [(e["date"], e["subscribers"]) for e in entries] == [("2024-01-01", 1200), ("2024-01-02", 1310)]
    assert entries[0]["activeUsers"] is None
    assert entries[0]["source"] == "wayback"
    assert _read(tmp_path / "history" / "reddit.json")["monthly"][0]["subscribers"] == 1310


def _repo_page(stars: str, forks: str) -> str:
    return (
        f'<a aria-label="{stars} users starred this repository">s</a>'
        f'<a aria-label="{forks} users forked this repository">f</a>'
        '<a aria-label="7 users are watching this repository">w</a>'
        '<a class="issues-tab" href="#"><span class="Counter">12</span></a>'
    )


def test_backfill_github_wayback_resumes_and_skips_failed_snapshots(tmp_path: Path) -> None:
    header = ["urlkey", "timestamp", "original", "mimetype", "statuscode", "digest", "length"]
    rows = [["k", ts, "https://github.com/o/r", "text/html", "200", "d", "1"] for ts in ("20200101000000", "20200201000000", "20200301000000", "20200401000000")]
    seed_path = tmp_path / "seed" / "github-wayback.json"
    seed_path.parent.mkdir()
    seed_path.write_text(
        json.dumps({"data": [{"date": "2020-01-01", "timestamp": "20200101000000", "stars": 900, "forks": 90, "watchers": 7, "openIssues": 10, "source": "wayback"}]}),
        encoding="utf-8",
    )

    seed_during_last: list[dict] = []

    def last_page() -> tuple[int, str]:
        seed_during_last.append(_read(seed_path))
        return 200, _repo_page("1,200", "130")

    routes: dict[str, object] = {
        "/cdx/search/cdx?url=github.com%2Fo%2Fr&output=json&filter=statuscode%3A200&collapse=timestamp%3A6": (200, json.dumps([header, *rows])),
        "/web/20200201000000/https://github.com/o/r": (200, _repo_page("1,000", "100")),
        "/web/20200301000000/https://github.com/o/r": (500, "archive hiccup"),
        "/web/20200401000000/https://github.com/o/r": last_page,
    }
    seen: list[str] = []
    server = _serve(routes, seen)
    cfg = PipelineConfig(data_dir=tmp_path, github_repo="o/r", wayback_base=f"http://127.0.0.1:{server.server_port}", request_delay_s=0)
    try:
        assert backfill_github_wayback(cfg) == 0
    finally:
        server.shutdown()

    assert "/web/20200101000000/https://github.com/o/r" not in seen
    # Written before the last snapshot was requested.
    assert [r["timestamp"] for r in seed_during_last[0]["data"]] == ["20200101000000", "20200201000000"]

    data = _read(seed_path)["data"]
    assert [r["timestamp"] for r in data] == ["20200101000000", "20200201000000", "20200401000000"]
    assert (data[1]["stars"], data[1]["forks"], data[1]["watchers"], data[1]["openIssues"]) == (1000, 100, 7, 12)
    assert data[2]["stars"] == 1200


def _commit(sha: str, when: str) -> dict:
    return {"sha": sha, "commit": {"author": {"date": when}}}


def _creators(*views: object) -> str:
    return json.dumps(
        [{"user_username": f"user{i}", "user": {"verified": i == 0}, "sum_unique_visitors": v, "sum_unique_inserters": 1} for i, v in enumerate(views)]
    )


def _creators_cfg(tmp_path: Path, base: str, **kw: object) -> PipelineConfig:
    return PipelineConfig(
        data_dir=tmp_path,
        github_api_base=base,
        raw_base=base,
        creators_repo="o/c",
        creators_file="stats.json",
        creators_delay_s=0,
        **kw,  # type: ignore[arg-type]
    )


A, B, C, D = ("a" * 40, "b" * 40, "c" * 40, "d" * 40)
COMMITS = json.dumps(
    [
        _commit(A, "2025-01-08T10:00:00Z"),
        _commit(B, "2025-01-07T10:00:00Z"),
        _commit(C, "2025-01-01T10:00:00Z"),
        _commit(D, "2024-12-24T10:00:00Z"),
    ]
)


def test_backfill_creators_takes_newest_revision_per_week(tmp_path: Path) -> None:
    routes: dict[str, object] = {
        "/repos/o/c/commits?path=stats.json&per_page=100&page=1": (200, COMMITS),
        "/repos/o/c/commits?path=stats.json&per_page=100&page=2": (200, "[]"),
        f"/o/c/{A}/stats.json": (200, _creators(10, 20, 30)),
        f"/o/c/{C}/stats.json": (200, _creators(10, 20)),
        # Non-numeric counts make this revision unusable.
        f"/o/c/{D}/stats.json": (200, _creators("lots")),
    }
    seen: list[str] = []
    server = _serve(routes, seen)
    cfg = _creators_cfg(tmp_path, f"http://127.0.0.1:{server.server_port}")
    try:
        assert backfill_creators(cfg, now=dt.datetime(2025, 1, 9, tzinfo=dt.timezone.utc)) == 0
    finally:
        server.shutdown()

    assert f"/o/c/{B}/stats.json" not in seen
    assert seen.count(f"/o/c/{A}/stats.json") == 1

    doc = _read(tmp_path / "history" / "creators-stats.json")
    assert [(w["date"], w["total"], w["totalViews"]) for w in doc["weekly"]] == [("2025-01-01", 2, 30), ("2025-01-08", 3, 60)]
    assert doc["daily"] == [doc["weekly"][-1]]
    assert doc["daily"][0]["commitSha"] == "aaaaaaa"
    assert doc["lastUpdated"] == "2025-01-09T00:00:00.000Z"


def test_backfill_creators_writes_file_when_latest_dataset_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    routes: dict[str, object] = {
        "/repos/o/c/commits?path=stats.json&per_page=100&page=1": (200, COMMITS),
        "/repos/o/c/commits?path=stats.json&per_page=100&page=2": (200, "[]"),
        f"/o/c/{A}/stats.json": (500, "boom"),
        f"/o/c/{C}/stats.json": (200, _creators(10, 20)),
        f"/o/c/{D}/stats.json": (200, _creators(5)),
    }
    server = _serve(routes)
    cfg = _creators_cfg(tmp_path, f"http://127.0.0.1:{server.server_port}")
    try:
        assert backfill_creators(cfg) == 0
    finally:
        server.shutdown()

    doc = _read(tmp_path / "history" / "creators-stats.json")
    assert [w["date"] for w in doc["weekly"]] == ["2024-12-24", "2025-01-01"]
    assert doc["daily"][0]["commitSha"] == "ccccccc"
    assert "Warning: latest (aaaaaaa)" in capsys.readouterr().out


def _write_creators_doc(tmp_path: Path) -> Path:
    path = tmp_path / "history" / "creators-stats.json"
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "lastUpdated": "old",
                "dataSource": {"name": "n8n Arena"},
                "daily": [{"date": "2025-01-20", "total": 9}],
                "weekly": [{"date": "2025-01-01", "total": 5}, {"date": "2025-01-20", "total": 9}],
            }
        ),
        encoding="utf-8",
    )
    return path


def test_fill_creator_gaps_lists_gaps_without_configured_dates(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_creators_doc(tmp_path)
    before = path.read_text(encoding="utf-8")

    assert fill_creator_gaps(PipelineConfig(data_dir=tmp_path)) == 0

    out = capsys.readouterr().out
    assert "2025-01-01 -> 2025-01-20 (19 days)" in out
    assert path.read_text(encoding="utf-8") == before


def test_fill_creator_gaps_adds_closest_revision(tmp_path: Path) -> None:
    path = _write_creators_doc(tmp_path)
    near = "/repos/o/c/commits?path=stats.json&per_page=30&since=2025-01-05T00%3A00%3A00Z&until=2025-01-15T00%3A00%3A00Z"
    routes: dict[str, object] = {
        near: (200, json.dumps([_commit("f" * 40, "2025-01-14T00:00:00Z"), _commit("e" * 40, "2025-01-09T12:00:00Z")])),
        f"/o/c/{'e' * 40}/stats.json": (200, _creators(1, 2, 3, 4, 5, 6, 7)),
    }
    seen: list[str] = []
    server = _serve(routes, seen)
    # The second date has no route, so its lookup fails and is skipped.
    cfg = _creators_cfg(tmp_path, f"http://127.0.0.1:{server.server_port}", creator_gap_dates=("2025-01-10", "2025-03-01"))
    try:
        assert fill_creator_gaps(cfg, now=dt.datetime(2025, 3, 2, tzinfo=dt.timezone.utc)) == 0
    finally:
        server.shutdown()

    assert f"/o/c/{'f' * 40}/stats.json" not in seen
    doc = _read(path)
    assert [(w["date"], w["total"]) for w in doc["weekly"]] == [("2025-01-01", 5), ("2025-01-09", 7), ("2025-01-20", 9)]
    assert doc["weekly"][1]["commitSha"] == "eeeeeee"
    assert doc["daily"] == [{"date": "2025-01-20", "total": 9}]
    assert doc["lastUpdated"] == "2025-03-02T00:00:00.000Z"


def _ld(*blocks: dict) -> str:
    return "".join(f'<script type="application/ld+json">{json.dumps(b)}</script>' for b in blocks)


def test_update_events_writes_rollups(tmp_path: Path) -> None:
    berlin = {
        "@type": "Event",
        "name": "Berlin meetup",
        "url": "https://luma.com/berlin-1",
        "startDate": "2024-07-10T18:00:00+02:00",
        "location": {
            "@type": "Place",
            "name": "Factory",
            "address": {"streetAddress": "Rheinsberger Str. 76", "addressLocality": "Berlin", "addressCountry": "DE"},
            "geo": {"latitude": 52.5373, "longitude": 13.3941},
        },
    }
    webinar = {"@type": "Event", "name": "Webinar", "url": "https://luma.com/web-1", "startDate": "2024-05-02T16:00:00Z", "location": {"@type": "VirtualLocation"}}
    paris = {
        "@type": "Event",
        "name": "Paris meetup",
        "url": "https://luma.com/paris-1",
        "startDate": "2024-06-01T18:00:00+02:00",
        "location": {"name": "Station F", "address": "5 Parvis Alan Turing, Paris, France"},
    }
    routes: dict[str, object] = {
        "/cal?k=c": (200, f"<html><head>{_ld(berlin)}</head></html>"),
        "/cal?k=c&period=past": (200, f"<html><head>{_ld({'@graph': [webinar, {'@type': 'Organization', 'events': [paris]}]})}</head></html>"),
    }
    server = _serve(routes)
    cfg = PipelineConfig(data_dir=tmp_path, events_url=f"http://127.0.0.1:{server.server_port}/cal")
    try:
        assert update_events(cfg, now=dt.datetime(2024, 7, 1, tzinfo=dt.timezone.utc)) == 0
    finally:
        server.shutdown()

    doc = _read(tmp_path / "history" / "events.json")
    assert doc["lastUpdated"] == "2024-07-01T00:00:00.000Z"
    assert [e["id"] for e in doc["upcoming"]] == ["berlin-1"]
    assert [e["id"] for e in doc["past"]] == ["paris-1", "web-1"]
    assert doc["stats"]["totalEvents"] == 3
    assert doc["stats"]["onlineCount"] == 1
    assert doc["stats"]["countriesCount"] == 2
    assert (doc["stats"]["firstEventDate"], doc["stats"]["lastEventDate"]) == ("2024-05-02", "2024-07-10")
    assert [m["month"] for m in doc["byMonth"]] == ["2024-05", "2024-06", "2024-07"]
    assert [p["city"] for p in doc["locations"]] == ["Berlin"]
