from __future__ import annotations

import dataclasses


@dataclasses.dataclass(frozen=True)
class MetricFamily:
    name: str
    metrics: tuple[str, ...]
    raw_log_file: str
    history_file: str
    nullable: frozenset[str] = frozenset()
    carry_forward: bool = False

    def blank_point(self, date: str) -> dict[str, object]:
        point: dict[str, object] = {"date": date}
        for m in self.metrics:
            point[m] = None if m in self.nullable else 0
        return point


GITHUB = MetricFamily(
    name="github",
    metrics=("stars", "forks", "watchers", "openIssues"),
    raw_log_file="github-raw-log.json",
    history_file="github-history.json",
    carry_forward=True,
)

COMMUNITY = MetricFamily(
    name="community",
    metrics=("users", "topics", "posts", "likes"),
    raw_log_file="community-raw-log.json",
    history_file="community-history.json",
    nullable=frozenset({"users"}),
    carry_forward=True,
)

BLUESKY_PROFILE = MetricFamily(
    name="bluesky-profile",
    metrics=("followers", "following", "posts"),
    raw_log_file="history/bluesky-profile-raw-log.json",
    history_file="history/bluesky-profile.json",
)

REDDIT = MetricFamily(
    name="reddit",
    metrics=("subscribers", "activeUsers", "postsLast24h", "commentsLast24h"),
    raw_log_file="history/reddit-raw-log.json",
    history_file="history/reddit.json",
    nullable=frozenset({"activeUsers"}),
)

FAMILIES: dict[str, MetricFamily] = {f.name: f for f in (GITHUB, COMMUNITY, BLUESKY_PROFILE, REDDIT)}


@dataclasses.dataclass(frozen=True)
class Retention:
    daily_days: int = 90
    weekly_days: int = 730


@dataclasses.dataclass
class RawLog:
    entries: list[dict[str, object]] = dataclasses.field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {"entries": self.entries}


@dataclasses.dataclass
class History:
    last_updated: str
    daily: list[dict[str, object]] = dataclasses.field(default_factory=list)
    weekly: list[dict[str, object]] = dataclasses.field(default_factory=list)
    monthly: list[dict[str, object]] = dataclasses.field(default_factory=list)
    extra: dict[str, object] = dataclasses.field(default_factory=dict)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"lastUpdated": self.last_updated}
        out.update(self.extra)
        out["daily"] = self.daily
        out["weekly"] = self.weekly
        out["monthly"] = self.monthly
        return out

    @classmethod
    def from_json(cls, data: dict) -> "History":
        extra = {k: v for k, v in data.items() if k not in ("lastUpdated", "daily", "weekly", "monthly")}
        return cls(
            last_updated=str(data.get("lastUpdated", "") or ""),
            daily=list(data.get("daily") or []),
            weekly=list(data.get("weekly") or []),
            monthly=list(data.get("monthly") or []),
            extra=extra,
        )
