from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable

from .config import Settings
from .db import (
    connect,
    create_report,
    fetch_report,
    fetch_trackable_postings,
    finalize_report,
    finish_run,
    init_db,
    insert_position_reports,
    start_run,
)
from .grouping import group_postings
from .http_client import GroupThrottle, HhClient, RequestFailed, build_hh_client
from .models import PositionOutcome, PositionStatus, Posting, ReportResult, ReportStatus

logger = logging.getLogger(__name__)


async def resolve_group(
    client: HhClient,
    group: list[Posting],
    page_size: int = 100,
) -> list[PositionOutcome]:
    """Run one search for a query group and assign every member a position.

    The first posting stands in for the whole group since all members share
    the same search parameters. A search that still fails after retries turns
    into an ``ERROR`` outcome per member instead of an exception.
    """
    representative = group[0]
    try:
        result = await client.search_vacancies(
            text=representative.normalized_title,
            area=representative.area_id,
            schedule=representative.schedule_id,
            per_page=page_size,
            page=0,
        )
    except RequestFailed as exc:
        logger.error(
            "search failed for %r (area=%s, schedule=%s), skipping %s vacancies: %s",
            representative.normalized_title,
            representative.area_id,
            representative.schedule_id,
            len(group),
            exc,
        )
        message = f"search failed after {exc.attempts} attempt(s): {exc}"
        return [
            PositionOutcome(
                posting_id=posting.id,
                status=PositionStatus.ERROR,
                competitors_count=0,
                error_message=message,
            )
            for posting in group
        ]

    ranks = {item_id: index + 1 for index, item_id in enumerate(result.item_ids)}
    more_pages = result.pages > 1
    logger.info("found %s competitors for %r", result.found, representative.normalized_title)

    outcomes: list[PositionOutcome] = []
    for posting in group:
        rank = ranks.get(posting.external_id)
        if rank is not None:
            outcome = PositionOutcome(posting.id, PositionStatus.RANKED, result.found, position=rank)
        elif more_pages:
            outcome = PositionOutcome(posting.id, PositionStatus.BEYOND_PAGE, result.found)
        else:
            outcome = PositionOutcome(posting.id, PositionStatus.NOT_FOUND, result.found)
        logger.debug(
            "vacancy %s: %s %s", posting.external_id, outcome.status.value, outcome.position or ""
        )
        outcomes.append(outcome)
    return outcomes


async def track_positions(
    conn: sqlite3.Connection,
    client: HhClient,
    postings: Iterable[Posting],
    throttle: GroupThrottle,
    page_size: int = 100,
) -> ReportResult:
    """Measure search positions for ``postings`` and record them as one report.

    The report is created as ``pending`` before any search and is finalized
    exactly once. Outcomes are buffered in memory and written in one batch.
    If anything besides a single group's search fails, the outcomes produced
    so far are still written (unless writing them is what failed), the report
    is marked ``failed`` with their count and the error is re-raised.
    """
    postings = list(postings)
    groups = group_postings(postings)
    logger.info("built %s search groups from %s vacancies", len(groups), len(postings))

    report_id = create_report(conn, len(postings))
    logger.info("created report %s", report_id)
    throttle.reset()

    outcomes: list[PositionOutcome] = []
    groups_failed = 0
    saving = False
    try:
        for index, group in enumerate(groups.values(), start=1):
            await throttle.wait()
            logger.info(
                "[group %s/%s] searching %r (%s vacancies)",
                index, len(groups), group[0].normalized_title, len(group),
            )
            group_outcomes = await resolve_group(client, group, page_size=page_size)
            if any(o.status is PositionStatus.ERROR for o in group_outcomes):
                groups_failed += 1
            outcomes.extend(group_outcomes)

        saving = True
        if outcomes:
            insert_position_reports(conn, report_id, outcomes)
        finalize_report(conn, report_id, ReportStatus.COMPLETED, len(outcomes))
    except Exception as exc:
        logger.exception("report %s failed after %s outcomes", report_id, len(outcomes))
        _salvage_failed_report(conn, report_id, outcomes, exc, save_outcomes=not saving)
        raise

    report = fetch_report(conn, report_id)
    status = ReportStatus(report["status"]) if report is not None else ReportStatus.COMPLETED
    logger.info("report %s %s with %s outcomes", report_id, status.value, len(outcomes))
    return ReportResult(
        report_id=report_id,
        status=status,
        total_vacancies=len(postings),
        processed_vacancies=len(outcomes),
        groups_total=len(groups),
        groups_failed=groups_failed,
        outcomes=outcomes,
    )


def _salvage_failed_report(
    conn: sqlite3.Connection,
    report_id: int,
    outcomes: list[PositionOutcome],
    exc: Exception,
    save_outcomes: bool,
) -> None:
    # Outcomes are written only when the batch insert itself was not what failed.
    try:
        conn.rollback()
        if save_outcomes and outcomes:
            insert_position_reports(conn, report_id, outcomes)
    except sqlite3.Error:
        logger.exception("could not save %s outcomes of report %s", len(outcomes), report_id)
    try:
        finalize_report(
            conn,
            report_id,
            ReportStatus.FAILED,
            len(outcomes),
            error_message=str(exc)[:500] or exc.__class__.__name__,
        )
    except sqlite3.Error:
        logger.exception("could not mark report %s as failed", report_id)


async def run_tracking(settings: Settings, client: HhClient | None = None) -> dict[str, Any]:
    conn = connect(settings.db_path)
    init_db(conn)
    run_id = start_run(conn, "track")

    client = client or build_hh_client(settings)
    throttle = GroupThrottle(settings.group_delay_seconds)
    stats: dict[str, Any] = {}

    try:
        postings = fetch_trackable_postings(conn)
        result = await track_positions(
            conn, client, postings, throttle, page_size=settings.search_page_size
        )
        stats.update(result.as_stats())
        finish_run(conn, run_id, True, stats)
        return stats
    except Exception as exc:
        stats["error"] = str(exc)
        finish_run(conn, run_id, False, stats)
        raise
    finally:
        await client.aclose()
        conn.close()
