#!/usr/bin/env python3
"""Export Slack team access logs into deduplicated CSV files, one per year or month."""

from __future__ import annotations

import argparse
import csv
import json
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from access_log_catalog import DEFAULT_SCHEMA, available_schemas, normalize_schema_name, record_row, resolve_columns
from access_log_client import (
    API_URL,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RATE_LIMIT,
    DEFAULT_RATE_PERIOD_SECONDS,
    AccessLogError,
    AccessLogsClient,
    RateLimiter,
    log_event,
    utc_now_iso,
)
from access_log_crawl import DEFAULT_MAX_PAGES_PER_WINDOW, CrawlResult, crawl_access_logs
from access_log_records import PARTITION_GRANULARITIES, LogRecord, partition_records

TOKEN_ENV_VAR = "SLACK_API_TOKEN"
DEFAULT_START_DATE = date(2021, 1, 1)
DEFAULT_OUTDIR = "data/access_logs"
DEFAULT_FILE_PREFIX = "slack_logins"
DEFAULT_LOGS_DIR = "logs/exports"
SECRET_ARG_KEYS = {"token"}


@dataclass
class ExportStats:
    partitions_written: int = 0
    rows_written: int = 0
    files: List[str] = field(default_factory=list)


class TeeStream:
    def __init__(self, *streams: object) -> None:
        self.streams = streams

    def write(self, text: str) -> int:
        for stream in self.streams:
            stream.write(text)
        return len(text)

    def flush(self) -> None:
        for stream in self.streams:
            stream.flush()

    def isatty(self) -> bool:
        return any(getattr(stream, "isatty", lambda: False)() for stream in self.streams)


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"Cannot parse boolean from value '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def _coerce_config_date(value: object, key: str) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise SystemExit(f"Config key '{key}' must be YYYY-MM-DD.") from exc
    raise SystemExit(f"Config key '{key}' must be a date string (YYYY-MM-DD).")


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_map = {
        "token": "token",
        "api_token": "token",
        "api_url": "api_url",
        "page_size": "page_size",
        "api_page_size": "page_size",
        "timeout_seconds": "timeout_seconds",
        "api_timeout_seconds": "timeout_seconds",
        "max_retries": "max_retries",
        "api_max_retries": "max_retries",
        "retry_sleep_seconds": "retry_sleep_seconds",
        "api_retry_sleep_seconds": "retry_sleep_seconds",
        "rate_limit": "rate_limit",
        "api_rate_limit": "rate_limit",
        "rate_period_seconds": "rate_period_seconds",
        "api_rate_period_seconds": "rate_period_seconds",
        "max_pages_per_window": "max_pages_per_window",
        "crawl_max_pages_per_window": "max_pages_per_window",
        "outdir": "outdir",
        "output_outdir": "outdir",
        "output_dir": "outdir",
        "file_prefix": "file_prefix",
        "output_file_prefix": "file_prefix",
        "partition": "partition",
        "output_partition": "partition",
        "schema": "schema",
        "output_schema": "schema",
        "logs_dir": "logs_dir",
        "logging_logs_dir": "logs_dir",
    }
    bool_map = {
        "dry_run": "dry_run",
        "crawl_dry_run": "dry_run",
        "output_dry_run": "dry_run",
        "progress": "progress",
        "logging_progress": "progress",
    }

    for source_key, target_key in scalar_map.items():
        if source_key in cfg:
            defaults[target_key] = cfg[source_key]
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            defaults[target_key] = _parse_bool(cfg[source_key])

    if "start_date" in cfg:
        defaults["start_date"] = _coerce_config_date(cfg["start_date"], "start_date")
    elif "crawl_start_date" in cfg:
        defaults["start_date"] = _coerce_config_date(cfg["crawl_start_date"], "crawl_start_date")
    return defaults


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}'. Use YYYY-MM-DD.") from exc


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML/JSON config file.")
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument("--token", help=f"Slack API bearer token. Falls back to {TOKEN_ENV_VAR}.")
    parser.add_argument("--api-url", default=API_URL, help="team.accessLogs endpoint URL.")
    parser.add_argument(
        "--start-date",
        type=parse_date,
        default=DEFAULT_START_DATE,
        help=f"First monthly window boundary (YYYY-MM-DD). Defaults to {DEFAULT_START_DATE.isoformat()}.",
    )
    parser.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE, help="Logins requested per page.")
    parser.add_argument(
        "--rate-limit",
        type=int,
        default=DEFAULT_RATE_LIMIT,
        help="Maximum API calls started per rate period.",
    )
    parser.add_argument(
        "--rate-period-seconds",
        type=float,
        default=DEFAULT_RATE_PERIOD_SECONDS,
        help="Length of one rate-limit period in seconds.",
    )
    parser.add_argument(
        "--max-pages-per-window",
        type=int,
        default=DEFAULT_MAX_PAGES_PER_WINDOW,
        help="Stop paging a window after this many pages and report it as truncated.",
    )
    parser.add_argument("--timeout-seconds", type=int, default=60, help="HTTP timeout in seconds.")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Attempts per page for network errors, HTTP 429 and 5xx. 1 aborts on the first failure.",
    )
    parser.add_argument("--retry-sleep-seconds", type=float, default=2.0, help="Retry backoff factor.")
    parser.add_argument("--outdir", default=DEFAULT_OUTDIR, help="Output directory for partition CSV files.")
    parser.add_argument("--file-prefix", default=DEFAULT_FILE_PREFIX, help="CSV file name prefix.")
    parser.add_argument(
        "--partition",
        choices=PARTITION_GRANULARITIES,
        default="year",
        help="Write one CSV per calendar year or per year-month.",
    )
    parser.add_argument(
        "--schema",
        default=DEFAULT_SCHEMA,
        help=f"Output column schema: {', '.join(available_schemas())} (aliases: minimal, full).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Crawl and report partitions without writing CSV files.")
    parser.add_argument(
        "--progress",
        dest="progress",
        action="store_true",
        default=True,
        help="Show tqdm progress bars (default: enabled).",
    )
    parser.add_argument("--no-progress", dest="progress", action="store_false", help="Disable progress bars.")
    parser.add_argument("--logs-dir", default=DEFAULT_LOGS_DIR, help="Directory where per-run logs are written.")

    if config_defaults:
        parser.set_defaults(**config_defaults)

    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    if args.page_size <= 0:
        raise SystemExit("--page-size must be greater than 0.")
    if args.rate_limit <= 0:
        raise SystemExit("--rate-limit must be greater than 0.")
    if args.rate_period_seconds <= 0:
        raise SystemExit("--rate-period-seconds must be greater than 0.")
    if args.max_pages_per_window <= 0:
        raise SystemExit("--max-pages-per-window must be greater than 0.")
    if args.max_retries <= 0:
        raise SystemExit("--max-retries must be at least 1.")
    if args.start_date > datetime.now(timezone.utc).date():
        raise SystemExit("--start-date must not be in the future.")
    if args.partition not in PARTITION_GRANULARITIES:
        raise SystemExit(f"--partition must be one of: {', '.join(PARTITION_GRANULARITIES)}.")
    try:
        args.schema = normalize_schema_name(args.schema)
    except KeyError as exc:
        raise SystemExit(f"--schema must be one of: {', '.join(available_schemas())}.") from exc


def build_client(args: argparse.Namespace, token: str) -> AccessLogsClient:
    return AccessLogsClient(
        token=token,
        api_url=args.api_url,
        page_size=args.page_size,
        rate_limiter=RateLimiter(max_calls=args.rate_limit, period_seconds=args.rate_period_seconds),
        timeout_seconds=args.timeout_seconds,
        max_retries=args.max_retries,
        retry_sleep_seconds=args.retry_sleep_seconds,
    )


def partition_csv_path(outdir: Path, file_prefix: str, label: str) -> Path:
    return outdir / f"{file_prefix}_{label}.csv"


def write_partition_csv(path: Path, records: Sequence[LogRecord], columns: Sequence[str]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(f"{path.suffix}.tmp")
    try:
        with open(temp_path, "w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=list(columns), lineterminator="\n")
            writer.writeheader()
            for record in records:
                writer.writerow(record_row(record, columns))
        temp_path.replace(path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    return len(records)


def export_partitions(
    crawl: CrawlResult,
    outdir: Path,
    file_prefix: str,
    granularity: str,
    schema: str,
    dry_run: bool = False,
) -> ExportStats:
    stats = ExportStats()
    records = crawl.index.all()
    columns = resolve_columns(schema, records)
    partitions = partition_records(records, granularity)
    log_event("PARTITIONS_READY", partitions=len(partitions), records=len(records), columns=",".join(columns))
    for label, partition in partitions.items():
        path = partition_csv_path(outdir, file_prefix, label)
        if dry_run:
            log_event("PARTITION_PLANNED", partition=label, rows=len(partition), path=path)
            continue
        rows = write_partition_csv(path, partition, columns)
        stats.partitions_written += 1
        stats.rows_written += rows
        stats.files.append(str(path))
        log_event("PARTITION_WRITTEN", partition=label, rows=rows, path=path)
    return stats


def describe_abort(exc: AccessLogError) -> str:
    window = "-"
    if exc.before is not None:
        window = datetime.fromtimestamp(exc.before, tz=timezone.utc).date().isoformat()
    page = exc.page if exc.page is not None else "-"
    return f"Export aborted at window={window} page={page}: {type(exc).__name__}: {exc}"


def crawl_summary(crawl: Optional[CrawlResult]) -> Dict[str, Any]:
    if crawl is None:
        return {}
    return {
        "windows": crawl.windows,
        "pages_fetched": crawl.pages_fetched,
        "records_seen": crawl.records_seen,
        "unique_records": len(crawl.index),
        "duplicates": crawl.index.duplicates,
        "truncated_windows": crawl.truncated_windows,
    }


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    run_started_at = utc_now_iso()
    run_started_monotonic = time.monotonic()
    run_dir = Path(args.logs_dir) / datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir.mkdir(parents=True, exist_ok=True)
    run_log_path = run_dir / "run.log"
    failures_csv_path = run_dir / "failures.csv"
    summary_json_path = run_dir / "summary.json"

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    run_log_handle = open(run_log_path, "a", encoding="utf-8")
    failures_handle = open(failures_csv_path, "w", encoding="utf-8", newline="")
    failure_writer = csv.DictWriter(
        failures_handle,
        fieldnames=("timestamp", "stage", "window", "page", "error"),
    )
    failure_writer.writeheader()
    failures_handle.flush()
    sys.stdout = TeeStream(original_stdout, run_log_handle)
    sys.stderr = TeeStream(original_stderr, run_log_handle)

    client: Optional[AccessLogsClient] = None
    crawl: Optional[CrawlResult] = None
    export_stats = ExportStats()
    summary_status = "completed"
    fatal_error: Optional[str] = None

    def record_failure(*, stage: str, error: str, window: str = "", page: object = "") -> None:
        failure_writer.writerow(
            {
                "timestamp": datetime.now().astimezone().isoformat(timespec="seconds"),
                "stage": stage,
                "window": window,
                "page": page,
                "error": error,
            }
        )
        failures_handle.flush()

    try:
        log_event("RUN_PATHS", run_dir=run_dir, run_log=run_log_path, failure_log=failures_csv_path)
        if args.config:
            log_event("RUN_CONFIG", config=args.config)

        token = args.token or os.getenv(TOKEN_ENV_VAR)
        if not token:
            raise SystemExit(f"Missing API token. Set --token or env var {TOKEN_ENV_VAR}.")
        validate_args(args)

        client = build_client(args, token)
        try:
            crawl = crawl_access_logs(
                client,
                start_date=args.start_date,
                max_pages=args.max_pages_per_window,
                progress=args.progress,
            )
        except AccessLogError as exc:
            window = ""
            if exc.before is not None:
                window = datetime.fromtimestamp(exc.before, tz=timezone.utc).date().isoformat()
            record_failure(stage=type(exc).__name__, error=str(exc), window=window, page=exc.page or "")
            raise SystemExit(describe_abort(exc)) from exc

        for window_label in crawl.truncated_windows:
            record_failure(stage="page-cap", error="page cap reached; window may be incomplete", window=window_label)

        export_stats = export_partitions(
            crawl,
            outdir=Path(args.outdir),
            file_prefix=args.file_prefix,
            granularity=args.partition,
            schema=args.schema,
            dry_run=args.dry_run,
        )
        if not crawl.complete:
            summary_status = "completed_truncated"
            log_event("RUN_WARN", reason="page_cap_reached", windows=",".join(crawl.truncated_windows))

        log_event(
            "RUN_SUMMARY",
            status=summary_status,
            unique_records=len(crawl.index),
            partitions_written=export_stats.partitions_written,
            rows_written=export_stats.rows_written,
            api_calls=client.calls_made,
        )
    except SystemExit as exc:
        summary_status = "failed"
        fatal_error = str(exc)
        if not isinstance(exc.__cause__, AccessLogError):
            record_failure(stage="fatal", error=fatal_error)
        raise
    except Exception as exc:  # noqa: BLE001
        summary_status = "failed"
        fatal_error = f"{type(exc).__name__}: {exc}"
        record_failure(stage="fatal", error=fatal_error)
        raise
    finally:
        if client is not None:
            client.close()
        elapsed_seconds = time.monotonic() - run_started_monotonic
        safe_args: Dict[str, Any] = {}
        for key, value in vars(args).items():
            if key in SECRET_ARG_KEYS:
                continue
            if isinstance(value, date):
                safe_args[key] = value.isoformat()
            else:
                safe_args[key] = value
        run_summary = {
            "started_at": run_started_at,
            "finished_at": utc_now_iso(),
            "status": summary_status,
            "fatal_error": fatal_error,
            "elapsed_seconds": round(elapsed_seconds, 3),
            "run_dir": str(run_dir),
            "run_log": str(run_log_path),
            "failures_csv": str(failures_csv_path),
            "summary_json": str(summary_json_path),
            "args": safe_args,
            "crawl": crawl_summary(crawl),
            "partitions_written": export_stats.partitions_written,
            "rows_written": export_stats.rows_written,
            "files": export_stats.files,
        }
        try:
            summary_json_path.write_text(json.dumps(run_summary, indent=2), encoding="utf-8")
            log_event("SUMMARY_WRITTEN", path=summary_json_path)
        except Exception as exc:  # noqa: BLE001
            log_event("SUMMARY_WRITE_WARN", error=str(exc))
        finally:
            sys.stdout = original_stdout
            sys.stderr = original_stderr
            failures_handle.close()
            run_log_handle.close()


if __name__ == "__main__":
    main()
