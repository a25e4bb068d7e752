from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from .config import load_settings
from .db import (
    add_profile,
    connect,
    fetch_pending_normalization,
    init_db,
    rows_to_dicts,
    save_normalized_titles,
)
from .sync import run_sync
from .tracking import run_tracking
from .utils import as_int_or_none, load_rows, write_rows


def configure_logging(level: str) -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))


def import_terms(db_path: Path, input_csv: Path) -> dict[str, Any]:
    titles: dict[int, str] = {}
    skipped = 0
    for row in load_rows(input_csv):
        vacancy_id = as_int_or_none((row.get("id") or "").strip())
        title = (row.get("normalized_title") or "").strip()
        if vacancy_id is None or not title:
            skipped += 1
            continue
        titles[vacancy_id] = title

    conn = connect(db_path)
    try:
        init_db(conn)
        updated = save_normalized_titles(conn, titles)
    finally:
        conn.close()
    return {"rows_read": len(titles) + skipped, "updated": updated, "skipped": skipped}


def export_pending(db_path: Path, output_csv: Path) -> dict[str, Any]:
    conn = connect(db_path)
    try:
        init_db(conn)
        rows = rows_to_dicts(fetch_pending_normalization(conn))
    finally:
        conn.close()
    written = write_rows(output_csv, ["id", "raw_title"], rows)
    return {"output": str(output_csv), "pending": written}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="hh.ru vacancy sync and search position tracker")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("sync", help="Sync vacancies of tracked companies and archive orphans")
    sub.add_parser("track", help="Measure search positions of normalized active vacancies")
    sub.add_parser("run-all", help="Run sync then track")

    p_company = sub.add_parser("add-company", help="Start tracking an hh.ru employer")
    p_company.add_argument("company_id", help="hh.ru employer id")

    p_export = sub.add_parser("export-pending", help="Write vacancies that still need a normalized title")
    p_export.add_argument("--output", default="data/pending_titles.csv", help="Output CSV path")

    p_import = sub.add_parser("import-terms", help="Load normalized titles from a CSV (id,normalized_title)")
    p_import.add_argument("--input", required=True, help="Input CSV path")

    return parser


def main() -> None:
    settings = load_settings()
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(settings.log_level)

    if args.cmd == "sync":
        stats = asyncio.run(run_sync(settings))
        _print_json({"command": "sync", **stats})
        return

    if args.cmd == "track":
        stats = asyncio.run(run_tracking(settings))
        _print_json({"command": "track", **stats})
        return

    if args.cmd == "run-all":
        sync_stats = asyncio.run(run_sync(settings))
        track_stats = asyncio.run(run_tracking(settings))
        _print_json({"command": "run-all", "sync": sync_stats, "track": track_stats})
        return

    if args.cmd == "add-company":
        conn = connect(settings.db_path)
        try:
            init_db(conn)
            added = add_profile(conn, args.company_id.strip())
        finally:
            conn.close()
        _print_json({"command": "add-company", "company_hh_id": args.company_id, "added": added})
        return

    if args.cmd == "export-pending":
        _print_json({"command": "export-pending", **export_pending(settings.db_path, Path(args.output))})
        return

    if args.cmd == "import-terms":
        _print_json({"command": "import-terms", **import_terms(settings.db_path, Path(args.input))})
        return


if __name__ == "__main__":
    main()
