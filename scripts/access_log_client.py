#!/usr/bin/env python3
"""Rate-limited client for the Slack team.accessLogs API."""

from __future__ import annotations

import json
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from access_log_records import LogRecord, parse_log_record

API_URL = "https://slack.com/api/team.accessLogs"
DEFAULT_PAGE_SIZE = 1000
DEFAULT_RATE_LIMIT = 20
DEFAULT_RATE_PERIOD_SECONDS = 60.0
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class AccessLogError(RuntimeError):
    def __init__(self, message: str, *, before: Optional[int] = None, page: Optional[int] = None) -> None:
        super().__init__(message)
        self.before = before
        self.page = page


class TransportError(AccessLogError):
    """Network or connection failure talking to the API."""


class APIError(AccessLogError):
    """The API answered with a non-200 status or ``ok: false``."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        before: Optional[int] = None,
        page: Optional[int] = None,
    ) -> None:
        super().__init__(message, before=before, page=page)
        self.status_code = status_code


class ParseError(AccessLogError):
    """The response body does not have the expected shape."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    text = str(value)
    if re.fullmatch(r"[A-Za-z0-9._:/+\-]+", text):
        return text
    return json.dumps(text, ensure_ascii=True)


def log_event(event: str, **fields: object) -> None:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    print(" ".join(parts))


def format_exception_message(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    rep = repr(exc).strip()
    if rep and rep != f"{type(exc).__name__}()":
        return rep
    return type(exc).__name__


def parse_retry_after_seconds(value: Optional[str]) -> float:
    if not value:
        return 0.0
    value = value.strip()
    if not value:
        return 0.0
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date Retry-After values are uncommon here; use default backoff.
        return 0.0


class RateLimiter:
    """Fixed-window call budget shared by every request of a run.

    At most ``max_calls`` acquisitions begin inside one period. When the
    budget is spent, ``acquire`` sleeps until the period ends and then opens
    a new one. The lock keeps the counter consistent when several workers
    share one limiter.
    """

    def __init__(
        self,
        max_calls: int = DEFAULT_RATE_LIMIT,
        period_seconds: float = DEFAULT_RATE_PERIOD_SECONDS,
        time_func: Optional[Callable[[], float]] = None,
        sleep_func: Optional[Callable[[float], None]] = None,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period_seconds <= 0:
            raise ValueError("period_seconds must be positive")
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._time_func = time_func or time.monotonic
        self._sleep_func = sleep_func or time.sleep
        self._lock = threading.Lock()
        self._period_start: Optional[float] = None
        self._count = 0

    def acquire(self) -> float:
        """Take one call slot, blocking until one is free. Returns seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._time_func()
                if self._period_start is None or now - self._period_start >= self.period_seconds:
                    self._period_start = now
                    self._count = 0
                if self._count < self.max_calls:
                    self._count += 1
                    return waited
                delay = self._period_start + self.period_seconds - now
            self._sleep_func(delay)
            waited += delay


@dataclass(frozen=True)
class PageResult:
    records: List[LogRecord]
    page: int
    pages: int

    @property
    def has_more(self) -> bool:
        return self.page < self.pages


def _require_int(value: object, key: str, *, before: int, page: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"paging.{key} must be an integer, got {value!r}", before=before, page=page)
    return value


def parse_page_payload(payload: object, *, before: int, page: int) -> PageResult:
    if not isinstance(payload, dict):
        raise ParseError("Response body is not a JSON object.", before=before, page=page)
    ok = payload.get("ok")
    if not isinstance(ok, bool):
        raise ParseError("Response is missing a boolean 'ok' field.", before=before, page=page)
    if not ok:
        error = str(payload.get("error") or "unknown_error")
        raise APIError(error, status_code=200, before=before, page=page)

    logins = payload.get("logins")
    if not isinstance(logins, list):
        raise ParseError("Response is missing the 'logins' list.", before=before, page=page)
    paging = payload.get("paging")
    if not isinstance(paging, dict):
        raise ParseError("Response is missing the 'paging' object.", before=before, page=page)
    current_page = _require_int(paging.get("page"), "page", before=before, page=page)
    total_pages = _require_int(paging.get("pages"), "pages", before=before, page=page)

    records: List[LogRecord] = []
    for index, raw in enumerate(logins):
        try:
            records.append(parse_log_record(raw))
        except ValueError as exc:
            raise ParseError(f"logins[{index}]: {exc}", before=before, page=page) from exc
    return PageResult(records=records, page=current_page, pages=total_pages)


class AccessLogsClient:
    def __init__(
        self,
        token: str,
        api_url: str = API_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: int = 60,
        max_retries: int = 3,
        retry_sleep_seconds: float = 2.0,
        sleep_func: Optional[Callable[[float], None]] = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.api_url = api_url
        self.page_size = page_size
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_sleep_seconds = retry_sleep_seconds
        self._sleep_func = sleep_func or time.sleep
        self.calls_made = 0
        self.session = requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def close(self) -> None:
        self.session.close()

    def _backoff(self, attempt: int, retry_after: float, *, before: int, page: int, reason: str) -> None:
        delay = max(self.retry_sleep_seconds * attempt, retry_after)
        log_event(
            "FETCH_RETRY",
            before=before,
            page=page,
            attempt=f"{attempt}/{self.max_retries}",
            sleep_seconds=f"{delay:.1f}",
            reason=reason,
        )
        self._sleep_func(delay)

    def _get(self, params: Dict[str, Any], *, before: int, page: int) -> requests.Response:
        for attempt in range(1, self.max_retries + 1):
            self.rate_limiter.acquire()
            self.calls_made += 1
            try:
                response = self.session.get(self.api_url, params=params, timeout=self.timeout_seconds)
            except requests.RequestException as exc:
                if attempt >= self.max_retries:
                    raise TransportError(
                        f"Request failed: {format_exception_message(exc)}", before=before, page=page
                    ) from exc
                self._backoff(attempt, 0.0, before=before, page=page, reason=type(exc).__name__)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                retry_after = parse_retry_after_seconds(response.headers.get("Retry-After"))
                response.close()
                self._backoff(attempt, retry_after, before=before, page=page, reason=f"http_{response.status_code}")
                continue
            if response.status_code != 200:
                detail = (response.text or "").strip()[:200] or response.reason or "no body"
                response.close()
                raise APIError(
                    f"HTTP {response.status_code}: {detail}",
                    status_code=response.status_code,
                    before=before,
                    page=page,
                )
            return response
        raise RuntimeError("Retry loop exhausted unexpectedly.")

    def fetch_page(self, before: int, page: int) -> PageResult:
        """Fetch one page of logins that happened before ``before`` (epoch seconds)."""
        params = {"before": before, "count": self.page_size, "page": page}
        response = self._get(params, before=before, page=page)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError("Response body is not valid JSON.", before=before, page=page) from exc
        finally:
            response.close()
        return parse_page_payload(payload, before=before, page=page)
