from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path

from .config import load_pipeline_config
from .http_client import FetchError
from .pipeline import JOBS, run_job


def _print_help() -> None:
    print("usage: community-pulse <job> [--config CONFIG]")
    print("")
    print("Fetch community metrics and maintain their history files.")
    print("")
    print("jobs:")
    width = max(len(name) for name in JOBS)
    for name, (_fn, desc) in JOBS.items():
        print(f"  {name:<{width}}  {desc}")
    print("")
    print("Run `community-pulse <job> --help` for job options.")


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        _print_help()
        return 0
    job = argv[0]
    if job not in JOBS:
        print(f"Error: unknown job {job!r}. Run `community-pulse --help` for the list.", file=sys.stderr)
        return 2

    p = argparse.ArgumentParser(prog=f"community-pulse {job}", description=JOBS[job][1])
    p.add_argument("--config", type=Path, default=Path("config.json"), help="Path to config.json (defaults apply when absent).")
    p.add_argument("--data-dir", type=Path, default=None, help="Override `data_dir` from config.json.")
    args = p.parse_args(argv[1:])

    try:
        cfg = load_pipeline_config(args.config)
        if args.data_dir is not None:
            cfg = dataclasses.replace(cfg, data_dir=args.data_dir)
        return run_job(job, cfg)
    except (FetchError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
