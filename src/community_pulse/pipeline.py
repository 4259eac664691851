from __future__ import annotations

import datetime as dt
import time
from pathlib import Path
from typing import Callable

from .config import PipelineConfig
from .history_aggregate import build_history, carry_forward
from .history_interpolate import interpolate_monthly, load_anchors, upsert_anchor, weekly_from_monthly
from .history_merge import (
    DivergenceThreshold,
    MergeReport,
    cumulative_open_from_csv,
    find_calibration_key,
    first_per_bucket,
    format_divergence_table,
    merge_series,
)
from .history_periods import iso_timestamp, month_key, utc_now
from .history_store import load_history, load_raw_log, read_json, save_history, save_raw_log, upsert, write_json
from .models import BLUESKY_PROFILE, COMMUNITY, GITHUB, REDDIT, History, MetricFamily
from .sources_base import fetch_or_none, polite_sleep
from .sources_creators import (
    calculate_stats,
    closest_revision,
    fetch_dataset,
    find_gaps,
    list_revisions,
    revisions_near,
    weekly_revisions,
)
from .sources_discourse import discourse_source, fetch_about
from .sources_events import build_events_document, fetch_events
from .sources_github import fetch_releases, fetch_repo_stats
from .sources_social import (
    bluesky_profile_extras,
    fetch_bluesky_profile,
    fetch_reddit,
    parse_bluesky_profile,
    parse_reddit_snapshot,
    reddit_extras,
)
from .sources_wayback import ArchiveSnapshot, extract_github_stats, extract_reddit_subscribers, fetch_cdx, fetch_replay, one_per_day

WAYBACK_SEED = "seed/github-wayback.json"
RELEASES_FILE = "github-releases.json"
EVENTS_FILE = "history/events.json"
CREATORS_FILE = "history/creators-stats.json"


def record_snapshot(
    cfg: PipelineConfig,
    family: MetricFamily,
    point: dict[str, object],
    *,
    now: dt.datetime,
    extra: dict[str, object] | None = None,
) -> History:
    """Upsert one data point into the family's raw log and regenerate its history file."""
    raw_path = cfg.data_path(family.raw_log_file)
    raw = upsert(load_raw_log(raw_path), point)
    save_raw_log(raw_path, raw)
    return rebuild_history(cfg, family, now=now, extra=extra)


def rebuild_history(
    cfg: PipelineConfig,
    family: MetricFamily,
    *,
    now: dt.datetime,
    extra: dict[str, object] | None = None,
) -> History:
    raw = load_raw_log(cfg.data_path(family.raw_log_file))
    history_path = cfg.data_path(family.history_file)
    # Load before building so a malformed history file aborts without writing.
    existing = load_history(history_path)
    if extra is None and existing is not None:
        extra = existing.extra

    history = build_history(raw, now=now, retention=cfg.retention, extra=extra)
    if family.carry_forward:
        history = carry_forward(history, existing, family=family, now=now, retention=cfg.retention)
    save_history(history_path, history)

    print(f"  Raw log: {len(raw.entries)} entries")
    print(f"  Daily: {len(history.daily)}, Weekly: {len(history.weekly)}, Monthly: {len(history.monthly)}")
    print(f"  Wrote: {history_path}")
    return history


def _print_point(point: dict[str, object], family: MetricFamily) -> None:
    for m in family.metrics:
        v = point.get(m)
        print(f"  {m}: {'N/A' if v is None else f'{v:,}'}")


def update_github(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Updating GitHub history for {cfg.github_repo}...")
    point = fetch_repo_stats(api_base=cfg.github_api_base, repo=cfg.github_repo, http=cfg.http, date=now.date().isoformat())
    _print_point(point, GITHUB)
    record_snapshot(cfg, GITHUB, point, now=now)

    releases = fetch_or_none(
        lambda: fetch_releases(api_base=cfg.github_api_base, repo=cfg.github_repo, http=cfg.http),
        label="releases",
    )
    if releases is not None:
        path = cfg.data_path(RELEASES_FILE)
        write_json(path, {"lastUpdated": iso_timestamp(now), "releases": releases})
        print(f"  Releases: {len(releases)} -> {path}")
    return 0


def update_community(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Updating community history from {cfg.discourse_base}...")
    point = fetch_about(base=cfg.discourse_base, http=cfg.http, date=now.date().isoformat())
    _print_point(point, COMMUNITY)
    record_snapshot(cfg, COMMUNITY, point, now=now)
    return 0


def update_bluesky_profile(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Updating Bluesky profile history for @{cfg.bluesky_handle}...")
    payload = fetch_bluesky_profile(api_base=cfg.bluesky_api_base, handle=cfg.bluesky_handle, http=cfg.http)
    point = parse_bluesky_profile(payload, date=now.date().isoformat())
    _print_point(point, BLUESKY_PROFILE)
    record_snapshot(cfg, BLUESKY_PROFILE, point, now=now, extra=bluesky_profile_extras(payload, point))
    return 0


def update_reddit(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Updating Reddit history for r/{cfg.subreddit}...")
    about, listing = fetch_reddit(base=cfg.reddit_base, subreddit=cfg.subreddit, http=cfg.http, delay_s=cfg.request_delay_s)
    point = parse_reddit_snapshot(about, listing, date=now.date().isoformat(), now_ts=now.timestamp())
    _print_point(point, REDDIT)
    record_snapshot(cfg, REDDIT, point, now=now, extra=reddit_extras(about, point))
    return 0


def update_events(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Fetching events from {cfg.events_url}...")
    upcoming = fetch_events(calendar_url=cfg.events_url, period="upcoming", http=cfg.http)
    print(f"  Found {len(upcoming)} upcoming events")
    past = fetch_events(calendar_url=cfg.events_url, period="past", http=cfg.http)
    print(f"  Found {len(past)} past events")

    doc = build_events_document(upcoming, past, last_updated=iso_timestamp(now))
    path = cfg.data_path(EVENTS_FILE)
    write_json(path, doc)

    stats = doc["stats"]
    print(f"Total events: {stats['totalEvents']} (upcoming {stats['upcomingCount']}, past {stats['pastCount']}, online {stats['onlineCount']})")
    print(f"Countries: {stats['countriesCount']}")
    print(f"Date range: {stats['firstEventDate']} to {stats['lastEventDate']}")
    print(f"Wrote: {path}")
    return 0


def backfill_github_wayback(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    target = f"github.com/{cfg.github_repo}"
    print(f"Backfilling GitHub metrics for {target} from the web archive...")
    snapshots = fetch_cdx(wayback_base=cfg.wayback_base, target=target, http=cfg.http, collapse="timestamp:6")
    print(f"  Found {len(snapshots)} monthly snapshots")

    seed_path = cfg.data_path(WAYBACK_SEED)
    seed = read_json(seed_path) if seed_path.exists() else {}
    results: list[dict[str, object]] = list(seed.get("data") or []) if isinstance(seed, dict) else []
    done = {str(r.get("timestamp", "")) for r in results}

    pending = [s for s in snapshots if s.timestamp not in done]
    print(f"  {len(done)} already scraped, {len(pending)} to go")
    for i, snap in enumerate(pending, start=1):
        print(f"[{i}/{len(pending)}] {snap.date}...")
        stats = fetch_or_none(
            lambda snap=snap: extract_github_stats(fetch_replay(snap, wayback_base=cfg.wayback_base, http=cfg.http), snap.timestamp),
            label=snap.timestamp,
        )
        if stats is not None:
            results.append(stats)
            results.sort(key=lambda r: str(r.get("timestamp", "")))
            # Re-written after every snapshot so an interrupted run resumes.
            write_json(
                seed_path,
                {
                    "lastUpdated": iso_timestamp(utc_now()),
                    "description": "Historical GitHub metrics scraped from the web archive",
                    "repo": cfg.github_repo,
                    "data": results,
                },
            )
            print(
                f"  Stars: {stats['stars']}, Forks: {stats['forks']}, "
                f"Watchers: {stats['watchers']}, Issues: {stats['openIssues']}"
            )
        polite_sleep(cfg.request_delay_s)

    print("\nData coverage:")
    for f in ("stars", "forks", "watchers", "openIssues"):
        have = sum(1 for r in results if r.get(f) is not None)
        print(f"  {f}: {have}/{len(results)} snapshots")
    return 0


def backfill_reddit_wayback(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    sub = cfg.subreddit
    print(f"Backfilling r/{sub} subscribers from the web archive...")
    candidates: list[ArchiveSnapshot] = []
    for target, full in (
        (f"reddit.com/r/{sub}", f"https://www.reddit.com/r/{sub}/"),
        (f"old.reddit.com/r/{sub}", f"https://old.reddit.com/r/{sub}/"),
    ):
        found = fetch_or_none(
            lambda target=target, full=full: fetch_cdx(
                wayback_base=cfg.wayback_base,
                target=target,
                http=cfg.http,
                filters=("statuscode:200", "mimetype:text/html"),
                original=full,
            ),
            label=f"CDX {target}",
        )
        if found is not None:
            print(f"  Found {len(found)} snapshots for {target}")
            candidates.extend(found)

    snapshots = one_per_day(candidates, prefer="old.reddit")
    print(f"  {len(snapshots)} unique days")

    raw_path = cfg.data_path(REDDIT.raw_log_file)
    raw = load_raw_log(raw_path)
    known = {str(e.get("date", "")) for e in raw.entries}
    added = 0
    for i, snap in enumerate(snapshots, start=1):
        if snap.date in known:
            continue
        html = fetch_or_none(
            lambda snap=snap: fetch_replay(snap, wayback_base=cfg.wayback_base, http=cfg.http),
            label=snap.timestamp,
        )
        subscribers = extract_reddit_subscribers(html) if html is not None else None
        if subscribers is None:
            print(f"[{i}/{len(snapshots)}] {snap.date}: skipped")
        else:
            print(f"[{i}/{len(snapshots)}] {snap.date}: {subscribers:,} subscribers")
            point = REDDIT.blank_point(snap.date)
            point.update({"subscribers": subscribers, "source": "wayback", "sourceDetail": "web.archive.org"})
            upsert(raw, point)
            known.add(snap.date)
            added += 1
        polite_sleep(cfg.request_delay_s)

    save_raw_log(raw_path, raw)
    print(f"\nAdded {added} data points")
    rebuild_history(cfg, REDDIT, now=now)
    return 0


def backfill_community(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print("Backfilling community history from anchors...")
    anchors = load_anchors(cfg.anchors_path)
    print(f"  Loaded {len(anchors)} anchors from {cfg.anchors_path}")

    live = discourse_source(base=cfg.discourse_base, http=cfg.http).fetch_or_none()
    if live is not None:
        live["date"] = month_key(now.date().isoformat())
        live.pop("sourceDetail", None)
        anchors = upsert_anchor(anchors, live)
        print(f"  Current month {live['date']} anchored to live stats")

    monthly = interpolate_monthly(anchors, metrics=COMMUNITY.metrics, nullable=COMMUNITY.nullable)
    two_years_ago = month_key(f"{now.year - 2:04d}-{now.month:02d}-01")
    weekly = weekly_from_monthly([p for p in monthly if str(p["date"]) >= two_years_ago])

    path = cfg.data_path(COMMUNITY.history_file)
    existing = load_history(path)
    history = History(
        last_updated=iso_timestamp(now),
        daily=existing.daily if existing is not None else [],
        weekly=weekly,
        monthly=monthly,
        extra=existing.extra if existing is not None else {},
    )
    save_history(path, history)
    print(f"  Daily: {len(history.daily)}, Weekly: {len(weekly)}, Monthly: {len(monthly)}")
    print(f"  Wrote: {path}")
    return 0


def _creators_document(cfg: PipelineConfig, *, now: dt.datetime, daily: list, weekly: list) -> dict[str, object]:
    return {
        "lastUpdated": iso_timestamp(now),
        "dataSource": {
            "name": "n8n Arena",
            "repository": f"https://github.com/{cfg.creators_repo}",
            "attribution": "https://n8narena.com",
        },
        "daily": daily,
        "weekly": weekly,
    }


def backfill_creators(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Backfilling creator history from {cfg.creators_repo}...")
    revisions = list_revisions(
        api_base=cfg.github_api_base,
        repo=cfg.creators_repo,
        path=cfg.creators_file,
        http=cfg.http,
        delay_s=cfg.creators_delay_s,
    )
    print(f"  Found {len(revisions)} commits")
    if not revisions:
        print("  Nothing to do")
        return 0

    selected = weekly_revisions(revisions)
    print(f"  Selected {len(selected)} weekly snapshots")

    def stats_at(rev) -> dict[str, object]:
        data = fetch_dataset(raw_base=cfg.raw_base, repo=cfg.creators_repo, path=cfg.creators_file, sha=rev.sha, http=cfg.http)
        return calculate_stats(data, date=rev.date, sha=rev.sha, excluded=cfg.excluded_creators)

    weekly: list[dict[str, object]] = []
    for week, rev in selected:
        stats = fetch_or_none(lambda rev=rev: stats_at(rev), label=f"{week} ({rev.sha[:7]})")
        if stats is not None:
            weekly.append(stats)
            print(f"  {week} ({rev.date}): {stats['total']} creators ({stats['verified']} verified)")
        polite_sleep(cfg.creators_delay_s)

    # The newest revision is normally the last weekly pick already.
    newest = revisions[0]
    if weekly and weekly[-1]["commitSha"] == newest.sha[:7]:
        latest = weekly[-1]
    else:
        latest = fetch_or_none(lambda: stats_at(newest), label=f"latest ({newest.sha[:7]})")
    daily = [latest] if latest is not None else weekly[-1:]

    path = cfg.data_path(CREATORS_FILE)
    write_json(path, _creators_document(cfg, now=now, daily=daily, weekly=weekly))
    print(f"  Saved {len(weekly)} weekly entries to {path}")
    if len(weekly) >= 2:
        print(f"  Growth: +{int(weekly[-1]['total']) - int(weekly[0]['total'])} creators over {len(weekly)} weeks")
    return 0


def fill_creator_gaps(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    path = cfg.data_path(CREATORS_FILE)
    doc = read_json(path)
    if not isinstance(doc, dict):
        raise ValueError(f"malformed creators history: {path}")
    weekly: list[dict[str, object]] = list(doc.get("weekly") or [])

    if not cfg.creator_gap_dates:
        gaps = find_gaps(weekly)
        print("No `creator_gap_dates` configured.")
        if gaps:
            print("Gaps longer than 10 days:")
            for a, b, days in gaps:
                print(f"  {a} -> {b} ({days} days)")
        else:
            print("No gaps found.")
        return 0

    print(f"Filling {len(cfg.creator_gap_dates)} creator history dates...")
    have = {str(w.get("date", "")) for w in weekly}
    added = 0
    for target in cfg.creator_gap_dates:
        print(f"Looking for a commit around {target}...")
        revs = fetch_or_none(
            lambda target=target: revisions_near(
                api_base=cfg.github_api_base,
                repo=cfg.creators_repo,
                path=cfg.creators_file,
                target_date=target,
                http=cfg.http,
            ),
            label=target,
        )
        rev = closest_revision(revs or [], target)
        if rev is None:
            print("  -> No commit found")
            continue
        if rev.date in have:
            print(f"  -> Already have {rev.date}")
            continue
        stats = fetch_or_none(
            lambda rev=rev: calculate_stats(
                fetch_dataset(
                    raw_base=cfg.raw_base, repo=cfg.creators_repo, path=cfg.creators_file, sha=rev.sha, http=cfg.http
                ),
                date=rev.date,
                sha=rev.sha,
                excluded=cfg.excluded_creators,
            ),
            label=rev.sha[:7],
        )
        if stats is not None:
            weekly.append(stats)
            have.add(rev.date)
            added += 1
            print(f"  -> {rev.sha[:7]} from {rev.date}")
        polite_sleep(cfg.creators_delay_s)

    weekly.sort(key=lambda w: str(w.get("date", "")))
    doc["weekly"] = weekly
    doc["lastUpdated"] = iso_timestamp(now)
    write_json(path, doc)
    print(f"Added {added} entries; {len(weekly)} weekly entries total")
    return 0


def _print_report(report: MergeReport, *, total: int) -> None:
    for f, n in report.filled.items():
        print(f"  {f} backfilled: {n} months")
    for f, n in report.compared.items():
        if n:
            print(f"  {f} compared with existing: {n} months")
    if report.divergences:
        print("\nDivergences beyond threshold:")
        print(format_divergence_table(report.divergences))
    print(f"  Monthly entries: {total}")


def _load_github_history(cfg: PipelineConfig) -> tuple[Path, History]:
    path = cfg.data_path(GITHUB.history_file)
    history = load_history(path)
    if history is None:
        raise FileNotFoundError(f"No GitHub history at {path}; run the `github` job first.")
    return path, history


def merge_wayback(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print("Merging archived GitHub metrics into the GitHub history...")
    seed = read_json(cfg.data_path(WAYBACK_SEED))
    rows = list(seed.get("data") or []) if isinstance(seed, dict) else []
    by_month = first_per_bucket(rows, month_key)
    print(f"  Archive data for {len(by_month)} months")

    path, history = _load_github_history(cfg)
    report = merge_series(
        history.monthly,
        by_month,
        fields=("forks", "watchers", "openIssues"),
        source_name="wayback",
        threshold=DivergenceThreshold(abs_diff=cfg.divergence_abs, pct_diff=cfg.divergence_pct),
    )
    history.last_updated = iso_timestamp(now)
    save_history(path, history)
    _print_report(report, total=len(history.monthly))
    return 0


def merge_issues(cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    now = now or utc_now()
    print(f"Merging issue counts from {cfg.issues_csv_path} into the GitHub history...")
    series = cumulative_open_from_csv(cfg.issues_csv_path)
    print(f"  Loaded {len(series)} months of issue data")

    path, history = _load_github_history(cfg)
    key = find_calibration_key(history.monthly, "openIssues", source="github-api")
    report = merge_series(
        history.monthly,
        series,
        fields=("openIssues",),
        source_name="bigquery",
        calibration_key=key,
        threshold=DivergenceThreshold(abs_diff=cfg.divergence_abs, pct_diff=cfg.divergence_pct),
    )
    if key and key in series:
        print(f"  Calibration at {key}: offset {report.offsets['openIssues']:+d}")
    else:
        print("  No calibration point; merging uncalibrated")
    history.last_updated = iso_timestamp(now)
    save_history(path, history)
    _print_report(report, total=len(history.monthly))
    return 0


JOBS: dict[str, tuple[Callable[..., int], str]] = {
    "github": (update_github, "Fetch repo stats and releases; update the GitHub history."),
    "community": (update_community, "Fetch forum stats; update the community history."),
    "bluesky-profile": (update_bluesky_profile, "Fetch the Bluesky profile; update its history."),
    "reddit": (update_reddit, "Fetch subreddit stats; update the Reddit history."),
    "events": (update_events, "Scrape the events calendar into history/events.json."),
    "backfill-github-wayback": (backfill_github_wayback, "Scrape archived GitHub pages into the archive seed file."),
    "backfill-reddit-wayback": (backfill_reddit_wayback, "Add archived subscriber counts to the Reddit raw log."),
    "backfill-community": (backfill_community, "Interpolate monthly community history from anchors."),
    "backfill-creators": (backfill_creators, "Sample the creators leaderboard once per ISO week."),
    "fill-creator-gaps": (fill_creator_gaps, "Fill configured dates in the creators history, or list gaps."),
    "merge-wayback": (merge_wayback, "Fill missing GitHub monthly fields from the archive seed."),
    "merge-issues": (merge_issues, "Fill missing open-issue counts from a calibrated CSV series."),
}


def run_job(name: str, cfg: PipelineConfig, *, now: dt.datetime | None = None) -> int:
    fn, _desc = JOBS[name]
    t0 = time.monotonic()
    rc = fn(cfg, now=now)
    print(f"Done in {time.monotonic() - t0:.1f}s")
    return rc
