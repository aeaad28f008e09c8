"""Report topic coverage of generated tasks for a module and flag uncovered topics."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Sequence

from engines.analysis_cache import AnalysisStorage
from engines.coverage import CoverageScheduler, CoverageTracker, TopicCatalog
from schemas import to_json_dict
from store import STORE_PATH, SQLiteDocumentStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("module_id", help="Module whose topic coverage should be reported")
    parser.add_argument(
        "--store",
        type=str,
        default=STORE_PATH,
        help=f"Path to the SQLite analysis store (default: {STORE_PATH})",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON coverage report",
    )
    return parser


def _build_report(store, module_id: str) -> dict:
    tracker = CoverageTracker(store)
    scheduler = CoverageScheduler(TopicCatalog(AnalysisStorage(store)), tracker)
    stats = scheduler.get_module_coverage_stats(module_id)
    return {
        "moduleId": module_id,
        "stats": to_json_dict(stats),
        "topics": [to_json_dict(record) for record in tracker.get_topic_coverage_for_module(module_id)],
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    store = SQLiteDocumentStore(args.store)
    store.init()
    try:
        report = _build_report(store, args.module_id)
    finally:
        store.close()

    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    uncovered = report["stats"]["topicsWithNoTasks"]
    if uncovered:
        for topic in uncovered:
            print(f"WARNING: no tasks generated for topic {topic}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
