#!/usr/bin/env python3
"""Print the status of previous export runs from logs/exports/*/summary.json."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List


def summary_line(run_name: str, payload: Dict[str, Any]) -> str:
    crawl = payload.get("crawl") or {}
    truncated: List[str] = crawl.get("truncated_windows") or []
    fatal_error = payload.get("fatal_error") or "-"
    return (
        f"{run_name}\t{payload.get('status', '-')}\t{crawl.get('windows', 0)}\t"
        f"{crawl.get('unique_records', 0)}\t{payload.get('partitions_written', 0)}\t"
        f"{len(truncated)}\t{payload.get('finished_at', '-')}\t{fatal_error}"
    )


def main() -> None:
    logs_dir = Path(os.getenv("LOGS_DIR", "logs/exports"))
    files = sorted(logs_dir.glob("*/summary.json"))

    print(f"Logs directory: {logs_dir}")
    if not files:
        print("No export run summaries found.")
        return

    print("run\tstatus\twindows\tunique_records\tpartitions\ttruncated_windows\tfinished_at\tfatal_error")
    for path in files:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except Exception as exc:  # noqa: BLE001
            print(f"{path.parent.name}\tERROR\t-\t-\t-\t-\t-\t{exc}")
            continue
        print(summary_line(path.parent.name, payload))


if __name__ == "__main__":
    main()
