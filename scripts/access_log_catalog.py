#!/usr/bin/env python3
"""Column catalog and output schemas for exported access-log CSV files."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Sequence

from access_log_records import LogRecord, format_epoch

COLUMNS: Dict[str, Dict[str, object]] = {
    "UserID": {
        "description": "Slack user ID of the subject.",
        "value": lambda record: record.user_id,
    },
    "Username": {
        "description": "Subject identity: username, or user ID when the username is empty.",
        "value": lambda record: record.subject,
    },
    "DateFirst": {
        "description": "First sighting of this login (UTC).",
        "value": lambda record: format_epoch(record.date_first),
    },
    "DateLogin": {
        "description": "Reference timestamp: last sighting, else first sighting (UTC).",
        "value": lambda record: format_epoch(record.reference_timestamp),
    },
    "Count": {
        "description": "Number of logins Slack folded into this entry.",
        "value": lambda record: "" if record.count is None else str(record.count),
    },
    "IP": {
        "description": "Network origin.",
        "value": lambda record: record.ip,
    },
    "UserAgent": {
        "description": "Client user-agent string.",
        "value": lambda record: record.user_agent,
    },
    "ISP": {
        "description": "Network provider.",
        "value": lambda record: record.isp,
    },
    "Country": {
        "description": "Geolocated country, when Slack resolved one.",
        "value": lambda record: record.country,
    },
    "Region": {
        "description": "Geolocated region, when Slack resolved one.",
        "value": lambda record: record.region,
    },
}

SCHEMAS: Dict[str, Dict[str, object]] = {
    "basic": {
        "description": "Columns every login carries.",
        "columns": ["Username", "DateLogin", "IP", "UserAgent", "ISP"],
    },
    "extended": {
        "description": "Every column the API can populate.",
        "columns": [
            "UserID",
            "Username",
            "DateFirst",
            "DateLogin",
            "Count",
            "IP",
            "UserAgent",
            "ISP",
            "Country",
            "Region",
        ],
    },
    "auto": {
        "description": "Basic columns plus extended columns populated by at least one exported login.",
        "columns": [],
    },
}

DEFAULT_SCHEMA = "basic"

SCHEMA_ALIASES: Dict[str, str] = {
    "minimal": "basic",
    "full": "extended",
}

# Columns that are empty on some logins; "auto" keeps them only when populated.
OPTIONAL_COLUMN_FIELDS: Dict[str, Callable[[LogRecord], bool]] = {
    "UserID": lambda record: bool(record.user_id),
    "DateFirst": lambda record: record.date_first is not None,
    "Count": lambda record: record.count is not None,
    "Country": lambda record: bool(record.country),
    "Region": lambda record: bool(record.region),
}


def available_schemas() -> List[str]:
    return sorted(SCHEMAS.keys())


def normalize_schema_name(name: str) -> str:
    cleaned = name.strip().lower()
    cleaned = SCHEMA_ALIASES.get(cleaned, cleaned)
    if cleaned not in SCHEMAS:
        raise KeyError(f"Unknown schema '{name}'. Choices: {', '.join(available_schemas())}")
    return cleaned


def resolve_columns(schema: str, records: Iterable[LogRecord] = ()) -> List[str]:
    schema = normalize_schema_name(schema)
    if schema != "auto":
        return list(SCHEMAS[schema]["columns"])  # type: ignore[arg-type]

    basic: Sequence[str] = SCHEMAS["basic"]["columns"]  # type: ignore[assignment]
    populated = set()
    for record in records:
        for column, is_populated in OPTIONAL_COLUMN_FIELDS.items():
            if column not in populated and is_populated(record):
                populated.add(column)
    extended: Sequence[str] = SCHEMAS["extended"]["columns"]  # type: ignore[assignment]
    return [column for column in extended if column in basic or column in populated]


def record_row(record: LogRecord, columns: Sequence[str]) -> Dict[str, str]:
    return {column: COLUMNS[column]["value"](record) for column in columns}  # type: ignore[operator]
