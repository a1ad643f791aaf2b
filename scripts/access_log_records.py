#!/usr/bin/env python3
"""Access-log records, deduplication and partitioning."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

PARTITION_GRANULARITIES = ("year", "month")
DATE_LOGIN_FORMAT = "%Y-%m-%d-%H:%M:%S"

DedupKey = Tuple[str, int]


@dataclass(frozen=True)
class LogRecord:
    user_id: str = ""
    username: str = ""
    date_first: Optional[int] = None
    date_last: Optional[int] = None
    count: Optional[int] = None
    ip: str = ""
    user_agent: str = ""
    isp: str = ""
    country: str = ""
    region: str = ""

    @property
    def subject(self) -> str:
        return self.username or self.user_id

    @property
    def reference_timestamp(self) -> int:
        if self.date_last is not None:
            return self.date_last
        # parse_log_record guarantees one of the two timestamps.
        return self.date_first  # type: ignore[return-value]

    @property
    def dedup_key(self) -> DedupKey:
        return (self.subject, self.reference_timestamp)


def _optional_text(raw: Dict[str, object], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    return str(value).strip()


def _optional_int(raw: Dict[str, object], key: str) -> Optional[int]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be an integer, got {value!r}")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{key}' must be an integer, got {value!r}") from exc


def parse_log_record(raw: object) -> LogRecord:
    """Build a LogRecord from one ``logins`` entry. Raises ValueError on bad input."""
    if not isinstance(raw, dict):
        raise ValueError(f"login entry must be an object, got {type(raw).__name__}")
    user_id = _optional_text(raw, "user_id")
    username = _optional_text(raw, "username")
    if not user_id and not username:
        raise ValueError("login entry has neither 'user_id' nor 'username'")
    date_first = _optional_int(raw, "date_first")
    date_last = _optional_int(raw, "date_last")
    if date_first is None and date_last is None:
        raise ValueError("login entry has neither 'date_first' nor 'date_last'")
    return LogRecord(
        user_id=user_id,
        username=username,
        date_first=date_first,
        date_last=date_last,
        count=_optional_int(raw, "count"),
        ip=_optional_text(raw, "ip"),
        user_agent=_optional_text(raw, "user_agent"),
        isp=_optional_text(raw, "isp"),
        country=_optional_text(raw, "country"),
        region=_optional_text(raw, "region"),
    )


class DeduplicationIndex:
    """Keeps one record per (subject, reference timestamp).

    A later record with a key already present replaces the stored one
    (latest wins), so a retried page with refreshed fields such as ISP
    overrides the earlier sighting.
    """

    def __init__(self) -> None:
        self._records: Dict[DedupKey, LogRecord] = {}
        self.duplicates = 0

    def ingest(self, record: LogRecord) -> bool:
        key = record.dedup_key
        is_new = key not in self._records
        if not is_new:
            self.duplicates += 1
        self._records[key] = record
        return is_new

    def ingest_many(self, records: Iterable[LogRecord]) -> int:
        return sum(1 for record in records if self.ingest(record))

    def all(self) -> List[LogRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __iter__(self) -> Iterator[LogRecord]:
        return iter(self.all())


def utc_datetime(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def format_epoch(epoch: Optional[int]) -> str:
    if epoch is None:
        return ""
    return utc_datetime(epoch).strftime(DATE_LOGIN_FORMAT)


def partition_label(record: LogRecord, granularity: str = "year") -> str:
    moment = utc_datetime(record.reference_timestamp)
    if granularity == "year":
        return f"{moment.year:04d}"
    if granularity == "month":
        return f"{moment.year:04d}-{moment.month:02d}"
    raise ValueError(f"Unknown partition granularity '{granularity}'. Choices: {', '.join(PARTITION_GRANULARITIES)}")


def partition_records(records: Iterable[LogRecord], granularity: str = "year") -> Dict[str, List[LogRecord]]:
    grouped: Dict[str, List[LogRecord]] = {}
    for record in records:
        grouped.setdefault(partition_label(record, granularity), []).append(record)
    return {
        label: sorted(grouped[label], key=lambda r: (r.reference_timestamp, r.subject))
        for label in sorted(grouped)
    }
