from __future__ import annotations

import logging
import sqlite3
from typing import Any

from .config import Settings
from .db import (
    close_orphaned_vacancies,
    connect,
    fetch_company_vacancies,
    fetch_tracked_company_ids,
    finish_run,
    init_db,
    insert_vacancies,
    reset_vacancy_title,
    set_vacancy_status,
    start_run,
    vacancy_row_from_api,
)
from .http_client import HhClient, RequestFailed, build_hh_client

logger = logging.getLogger(__name__)


def reconcile_company_vacancies(
    conn: sqlite3.Connection,
    company_hh_id: str,
    fetched: list[dict[str, Any]],
) -> dict[str, int]:
    """Bring the stored vacancies of one employer in line with the API listing.

    New vacancies are inserted as active, closed ones that reappear are
    reactivated, active ones missing from the listing are closed, and a
    changed raw title clears the normalized title so it is computed again.
    """
    existing = {int(row["hh_vacancy_id"]): row for row in fetch_company_vacancies(conn, company_hh_id)}

    fetched_by_id: dict[int, dict[str, Any]] = {}
    for item in fetched:
        fetched_by_id.setdefault(int(item["id"]), item)

    new_rows = [
        vacancy_row_from_api(company_hh_id, item)
        for hh_id, item in fetched_by_id.items()
        if hh_id not in existing
    ]
    reactivate = [
        int(row["id"])
        for hh_id, row in existing.items()
        if row["status"] == "closed" and hh_id in fetched_by_id
    ]
    close = [
        int(row["id"])
        for hh_id, row in existing.items()
        if row["status"] == "active" and hh_id not in fetched_by_id
    ]
    renamed: list[tuple[int, str]] = []
    for hh_id, item in fetched_by_id.items():
        row = existing.get(hh_id)
        new_title = str(item.get("name") or "")
        if row is not None and row["raw_title"] != new_title:
            logger.info("title changed for %s: %r -> %r", hh_id, row["raw_title"], new_title)
            renamed.append((int(row["id"]), new_title))

    with conn:
        insert_vacancies(conn, new_rows)
        set_vacancy_status(conn, reactivate, "active")
        set_vacancy_status(conn, close, "closed")
        for vacancy_id, title in renamed:
            reset_vacancy_title(conn, vacancy_id, title)

    return {
        "inserted": len(new_rows),
        "reactivated": len(reactivate),
        "closed": len(close),
        "renamed": len(renamed),
    }


async def sync_all_companies(conn: sqlite3.Connection, client: HhClient) -> dict[str, Any]:
    company_ids = fetch_tracked_company_ids(conn)
    logger.info("syncing vacancies for %s companies", len(company_ids))

    stats: dict[str, Any] = {
        "companies_total": len(company_ids),
        "companies_synced": 0,
        "companies_failed": 0,
        "vacancies_fetched": 0,
        "inserted": 0,
        "reactivated": 0,
        "closed": 0,
        "renamed": 0,
        "failures": [],
    }

    for company_id in company_ids:
        try:
            fetched = await client.fetch_employer_vacancies(company_id)
        except RequestFailed as exc:
            logger.error("could not fetch vacancies for company %s: %s", company_id, exc)
            stats["companies_failed"] += 1
            stats["failures"].append({"company_hh_id": company_id, "error": str(exc)[:300]})
            continue

        logger.info("fetched %s active vacancies for company %s", len(fetched), company_id)
        try:
            changes = reconcile_company_vacancies(conn, company_id, fetched)
        except (KeyError, TypeError, ValueError, sqlite3.IntegrityError) as exc:
            logger.error("could not reconcile vacancies for company %s: %r", company_id, exc)
            stats["companies_failed"] += 1
            stats["failures"].append({"company_hh_id": company_id, "error": repr(exc)[:300]})
            continue
        for key, value in changes.items():
            stats[key] += value
        stats["vacancies_fetched"] += len(fetched)
        stats["companies_synced"] += 1

    return stats


def archive_orphaned_vacancies(conn: sqlite3.Connection) -> int:
    closed = close_orphaned_vacancies(conn)
    if closed:
        logger.info("archived %s vacancies of companies no longer tracked", closed)
    return closed


async def run_sync(settings: Settings, client: HhClient | None = None) -> dict[str, Any]:
    conn = connect(settings.db_path)
    init_db(conn)
    run_id = start_run(conn, "sync")
    client = client or build_hh_client(settings)
    stats: dict[str, Any] = {}

    try:
        stats.update(await sync_all_companies(conn, client))
        stats["orphans_archived"] = archive_orphaned_vacancies(conn)
        finish_run(conn, run_id, True, stats)
        return stats
    except Exception as exc:
        stats["error"] = str(exc)
        finish_run(conn, run_id, False, stats)
        raise
    finally:
        await client.aclose()
        conn.close()
