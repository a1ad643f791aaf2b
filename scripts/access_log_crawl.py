#!/usr/bin/env python3
"""Walk monthly windows, drain their pages and collect deduplicated logins."""

from __future__ import annotations

import calendar
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Iterator, List, Optional

from tqdm import tqdm

from access_log_client import AccessLogError, AccessLogsClient, PageResult, log_event
from access_log_records import DeduplicationIndex, LogRecord

DEFAULT_MAX_PAGES_PER_WINDOW = 50


@dataclass(frozen=True)
class TimeWindow:
    start: int
    end: Optional[int] = None
    # Crawl cutoff; only set on the trailing window, whose end lies after it.
    now: Optional[int] = None

    @property
    def before(self) -> int:
        """Exclusive upper bound sent to the API: the window end, else the cutoff."""
        if self.end is not None:
            return self.end
        if self.now is not None:
            return self.now
        return int(time.time())

    @property
    def label(self) -> str:
        return datetime.fromtimestamp(self.start, tz=timezone.utc).date().isoformat()


@dataclass
class WindowResult:
    window: TimeWindow
    records: List[LogRecord]
    pages_fetched: int
    truncated: bool = False


@dataclass
class CrawlResult:
    index: DeduplicationIndex
    windows: int = 0
    pages_fetched: int = 0
    records_seen: int = 0
    truncated_windows: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.truncated_windows


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _utc_midnight(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def iter_month_boundaries(start: date, now: datetime) -> Iterator[datetime]:
    """Yield UTC midnights one calendar month apart, from ``start`` until past ``now``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    offset = 0
    while True:
        boundary = _utc_midnight(add_months(start, offset))
        if boundary > now:
            return
        yield boundary
        offset += 1


def iter_time_windows(start: date, now: datetime) -> Iterator[TimeWindow]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    cutoff = int(now.timestamp())
    boundaries = iter_month_boundaries(start, now)
    current = next(boundaries, None)
    while current is not None:
        following = next(boundaries, None)
        if following is not None:
            yield TimeWindow(start=int(current.timestamp()), end=int(following.timestamp()))
        else:
            yield TimeWindow(start=int(current.timestamp()), now=cutoff)
        current = following


def walk_window_pages(
    client: AccessLogsClient,
    window: TimeWindow,
    max_pages: int = DEFAULT_MAX_PAGES_PER_WINDOW,
    on_page: Optional[Callable[[PageResult], None]] = None,
) -> WindowResult:
    if max_pages < 1:
        raise ValueError("max_pages must be at least 1")
    records: List[LogRecord] = []
    page = 1
    while True:
        result = client.fetch_page(window.before, page)
        records.extend(result.records)
        if on_page is not None:
            on_page(result)
        if not result.has_more:
            return WindowResult(window=window, records=records, pages_fetched=page)
        if page >= max_pages:
            log_event(
                "PAGE_CAP_REACHED",
                window=window.label,
                pages_fetched=page,
                reported_pages=result.pages,
                max_pages=max_pages,
            )
            return WindowResult(window=window, records=records, pages_fetched=page, truncated=True)
        page += 1


def crawl_access_logs(
    client: AccessLogsClient,
    start_date: date,
    now: Optional[datetime] = None,
    max_pages: int = DEFAULT_MAX_PAGES_PER_WINDOW,
    index: Optional[DeduplicationIndex] = None,
    progress: bool = True,
) -> CrawlResult:
    now = now or datetime.now(timezone.utc)
    result = CrawlResult(index=index if index is not None else DeduplicationIndex())
    log_event("CRAWL_START", start_date=start_date.isoformat(), now=now.isoformat(timespec="seconds"), max_pages=max_pages)

    windows_pbar = tqdm(iter_time_windows(start_date, now), desc="Windows", unit="window", disable=not progress)
    try:
        for window in windows_pbar:
            log_event("WINDOW_START", window=window.label, before=window.before)

            def report_page(page_result: PageResult, window: TimeWindow = window) -> None:
                log_event(
                    "PAGE_FETCHED",
                    window=window.label,
                    page=page_result.page,
                    pages=page_result.pages,
                    records=len(page_result.records),
                )

            try:
                window_result = walk_window_pages(client, window, max_pages=max_pages, on_page=report_page)
            except AccessLogError as exc:
                log_event(
                    "CRAWL_ABORTED",
                    window=window.label,
                    page=exc.page,
                    kind=type(exc).__name__,
                    error=str(exc),
                )
                raise

            new_records = result.index.ingest_many(window_result.records)
            result.windows += 1
            result.pages_fetched += window_result.pages_fetched
            result.records_seen += len(window_result.records)
            if window_result.truncated:
                result.truncated_windows.append(window.label)
            windows_pbar.set_postfix(records=len(result.index))
            log_event(
                "WINDOW_DONE",
                window=window.label,
                pages=window_result.pages_fetched,
                records=len(window_result.records),
                new_records=new_records,
                truncated=window_result.truncated,
            )
    finally:
        windows_pbar.close()

    log_event(
        "CRAWL_COMPLETE",
        windows=result.windows,
        pages=result.pages_fetched,
        records_seen=result.records_seen,
        unique_records=len(result.index),
        duplicates=result.index.duplicates,
        truncated_windows=len(result.truncated_windows),
    )
    return result
