#!/usr/bin/env python3
# scripts/run_jobs.py
"""
Batch job runner (cron entry point).

Runs one job across every active clinic, or a chosen subset, and prints the
aggregate summary as JSON. Exit code is non-zero when any clinic failed.

Examples:
  # Promote due refills for all clinics
  python -m scripts.run_jobs process_due_refills

  # Retry dead letters for two clinics only
  python -m scripts.run_jobs retry_dead_letters --clinic-id 1 --clinic-id 2

  # List job types
  python -m scripts.run_jobs --list
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from rxflow.core.config import get_settings
from rxflow.core.database import SessionLocal
from rxflow.core.errors import AppError
from rxflow.services.batch_runner import known_job_types, run_job

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run an rxflow batch job")
    p.add_argument("job_type", nargs="?", help="Job to run (see --list)")
    p.add_argument("--list", action="store_true", help="List known job types and exit")
    p.add_argument(
        "--clinic-id",
        type=int,
        action="append",
        dest="clinic_ids",
        help="Restrict the run to this clinic (repeatable). Default: all active clinics",
    )
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.list:
        for job_type in known_job_types():
            print(job_type)
        return

    if not args.job_type:
        print("Nothing to do. Pass a job type or --list.")
        sys.exit(1)

    try:
        summary = run_job(SessionLocal, args.job_type, clinic_ids=args.clinic_ids)
    except AppError as exc:
        raise SystemExit(f"{exc.code}: {exc.message}")

    print(json.dumps(summary, indent=2, default=str))
    if summary["clinics_failed"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
