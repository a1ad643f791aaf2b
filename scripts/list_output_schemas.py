#!/usr/bin/env python3
"""Show the CSV column schemas available to the access-log exporter."""

from __future__ import annotations

import argparse
import json
from typing import Dict, List

from access_log_catalog import COLUMNS, DEFAULT_SCHEMA, SCHEMAS, available_schemas, resolve_columns


def _build_payload(schema_names: List[str]) -> Dict[str, object]:
    rows = []
    for name in schema_names:
        columns = resolve_columns(name)
        rows.append(
            {
                "schema": name,
                "default": name == DEFAULT_SCHEMA,
                "description": SCHEMAS[name]["description"],
                "columns": [
                    {"name": column, "description": COLUMNS[column]["description"]}
                    for column in columns
                ],
            }
        )
    return {"schema_count": len(rows), "schemas": rows}


def _print_text(payload: Dict[str, object]) -> None:
    print("Access-log CSV schemas")
    print("======================")
    for row in payload["schemas"]:  # type: ignore[union-attr]
        marker = " (default)" if row["default"] else ""
        print(f"- {row['schema']}{marker}: {row['description']}")
        for column in row["columns"]:
            print(f"  {column['name']}: {column['description']}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--schema",
        action="append",
        choices=available_schemas(),
        help="Schema to show. Can be passed multiple times. Defaults to all.",
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text output.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    payload = _build_payload(args.schema or available_schemas())
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        _print_text(payload)


if __name__ == "__main__":
    main()
