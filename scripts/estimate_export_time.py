#!/usr/bin/env python3
"""Estimate API calls and minimum wall-clock time of an access-log export."""

from __future__ import annotations

import argparse
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone

from access_log_client import DEFAULT_RATE_LIMIT, DEFAULT_RATE_PERIOD_SECONDS
from access_log_crawl import DEFAULT_MAX_PAGES_PER_WINDOW, iter_time_windows


@dataclass
class Estimate:
    windows: int
    api_calls: int
    min_seconds: float


def parse_iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}'. Use YYYY-MM-DD.") from exc


def estimate_export(
    start: date,
    now: datetime,
    pages_per_window: int,
    rate_limit: int,
    rate_period_seconds: float,
) -> Estimate:
    windows = sum(1 for _ in iter_time_windows(start, now))
    api_calls = windows * pages_per_window
    # The first period is free; every further full budget waits one period.
    periods = max(0, math.ceil(api_calls / rate_limit) - 1)
    return Estimate(windows=windows, api_calls=api_calls, min_seconds=periods * rate_period_seconds)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--start-date", type=parse_iso_date, required=True, help="First window boundary (YYYY-MM-DD).")
    parser.add_argument(
        "--pages-per-window",
        type=int,
        default=1,
        help=f"Assumed pages per monthly window (capped at {DEFAULT_MAX_PAGES_PER_WINDOW}).",
    )
    parser.add_argument("--rate-limit", type=int, default=DEFAULT_RATE_LIMIT, help="API calls per period.")
    parser.add_argument(
        "--rate-period-seconds",
        type=float,
        default=DEFAULT_RATE_PERIOD_SECONDS,
        help="Length of one rate-limit period in seconds.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.pages_per_window <= 0 or args.rate_limit <= 0 or args.rate_period_seconds <= 0:
        raise SystemExit("--pages-per-window, --rate-limit and --rate-period-seconds must be positive.")
    pages = min(args.pages_per_window, DEFAULT_MAX_PAGES_PER_WINDOW)
    estimate = estimate_export(
        args.start_date,
        datetime.now(timezone.utc),
        pages,
        args.rate_limit,
        args.rate_period_seconds,
    )
    print(f"Windows: {estimate.windows}")
    print(f"API calls: {estimate.api_calls:,}")
    print(f"Minimum time under rate limit: {estimate.min_seconds / 60.0:.1f} minutes")


if __name__ == "__main__":
    main()
