from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path

from .http_client import DEFAULT_USER_AGENT
from .models import Retention
from .sources_base import HttpSettings
from .sources_creators import CREATORS_FILE, CREATORS_REPO, EXCLUDED_CREATORS, RAW_BASE


def load_config(config_path: Path) -> dict:
    if not config_path.exists():
        return {}
    data = json.loads(config_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"config must be a JSON object: {config_path}")
    return data


def save_config(config_path: Path, config: dict) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config, indent=2, sort_keys=True) + "\n", encoding="utf-8")


@dataclasses.dataclass(frozen=True)
class PipelineConfig:
    data_dir: Path = Path("public/data")
    github_repo: str = "n8n-io/n8n"
    github_api_base: str = "https://api.github.com"
    discourse_base: str = "https://community.n8n.io"
    bluesky_api_base: str = "https://public.api.bsky.app"
    bluesky_handle: str = "n8n.io"
    reddit_base: str = "https://www.reddit.com"
    subreddit: str = "n8n"
    events_url: str = "https://luma.com/n8n-events"
    wayback_base: str = "https://web.archive.org"
    creators_repo: str = CREATORS_REPO
    creators_file: str = CREATORS_FILE
    raw_base: str = RAW_BASE
    excluded_creators: tuple[str, ...] = EXCLUDED_CREATORS
    creator_gap_dates: tuple[str, ...] = ()
    daily_retention_days: int = 90
    weekly_retention_days: int = 730
    request_delay_s: float = 1.5
    creators_delay_s: float = 0.5
    timeout_s: int = 30
    user_agent: str = DEFAULT_USER_AGENT
    ca_bundle_path: str = ""
    anchors_path: Path = Path("seeds/community-anchors.json")
    issues_csv_path: Path = Path("seeds/github-issues-monthly.csv")
    divergence_abs: int = 20
    divergence_pct: float | None = None
    github_token: str = dataclasses.field(default="", repr=False)

    @classmethod
    def from_dict(cls, raw: dict, *, env: dict[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if env is None else env
        known = {f.name for f in dataclasses.fields(cls)} - {"github_token"}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

        kw: dict[str, object] = {}
        for k, v in raw.items():
            if k in ("data_dir", "anchors_path", "issues_csv_path"):
                kw[k] = Path(str(v)).expanduser()
            elif k in ("excluded_creators", "creator_gap_dates"):
                if not isinstance(v, list):
                    raise ValueError(f"config `{k}` must be a list of strings")
                kw[k] = tuple(str(x) for x in v)
            elif k in ("daily_retention_days", "weekly_retention_days", "timeout_s", "divergence_abs"):
                kw[k] = int(v)
            elif k in ("request_delay_s", "creators_delay_s"):
                kw[k] = float(v)
            elif k == "divergence_pct":
                kw[k] = None if v is None else float(v)
            else:
                kw[k] = str(v)
        kw["github_token"] = str(env.get("GITHUB_TOKEN", "") or "").strip()
        return cls(**kw)  # type: ignore[arg-type]

    @property
    def retention(self) -> Retention:
        return Retention(daily_days=self.daily_retention_days, weekly_days=self.weekly_retention_days)

    @property
    def http(self) -> HttpSettings:
        return HttpSettings(
            timeout_s=self.timeout_s,
            ca_bundle_path=self.ca_bundle_path,
            user_agent=self.user_agent,
            github_token=self.github_token,
        )

    def data_path(self, relative: str) -> Path:
        return self.data_dir / relative


def load_pipeline_config(config_path: Path) -> PipelineConfig:
    return PipelineConfig.from_dict(load_config(config_path))
