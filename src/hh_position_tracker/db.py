from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Iterable

from .models import PositionOutcome, Posting, ReportStatus
from .utils import as_int_or_none, json_dumps, utc_now_iso


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS profile (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_hh_id TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS vacancy (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            company_hh_id TEXT NOT NULL,
            hh_vacancy_id INTEGER NOT NULL UNIQUE,
            raw_title TEXT NOT NULL,
            normalized_title TEXT,
            area_id INTEGER,
            area_name TEXT,
            schedule_id TEXT,
            url TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            published_at TEXT,
            salary_from INTEGER,
            salary_to INTEGER,
            salary_currency TEXT,
            salary_gross INTEGER,
            first_seen_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_vacancy_company ON vacancy(company_hh_id);
        CREATE INDEX IF NOT EXISTS idx_vacancy_status ON vacancy(status);

        CREATE TABLE IF NOT EXISTS report (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            status TEXT NOT NULL,
            total_vacancies INTEGER NOT NULL,
            processed_vacancies INTEGER,
            error_message TEXT,
            created_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS position_report (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            report_id INTEGER NOT NULL REFERENCES report(id),
            vacancy_id INTEGER NOT NULL REFERENCES vacancy(id),
            position_status TEXT NOT NULL,
            position INTEGER,
            competitors_count INTEGER NOT NULL,
            error_message TEXT,
            UNIQUE (report_id, vacancy_id)
        );

        CREATE TABLE IF NOT EXISTS run_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_type TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            ok INTEGER,
            stats_json TEXT
        );
        """
    )
    conn.commit()


def start_run(conn: sqlite3.Connection, run_type: str) -> int:
    cur = conn.execute(
        "INSERT INTO run_history (run_type, started_at, ok) VALUES (?, ?, NULL)",
        (run_type, utc_now_iso()),
    )
    conn.commit()
    return int(cur.lastrowid)


def finish_run(conn: sqlite3.Connection, run_id: int, ok: bool, stats: dict) -> None:
    conn.execute(
        "UPDATE run_history SET finished_at = ?, ok = ?, stats_json = ? WHERE id = ?",
        (utc_now_iso(), 1 if ok else 0, json_dumps(stats), run_id),
    )
    conn.commit()


def add_profile(conn: sqlite3.Connection, company_hh_id: str) -> bool:
    cur = conn.execute(
        "INSERT OR IGNORE INTO profile (company_hh_id, created_at) VALUES (?, ?)",
        (company_hh_id, utc_now_iso()),
    )
    conn.commit()
    return cur.rowcount > 0


def fetch_tracked_company_ids(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT company_hh_id FROM profile ORDER BY id").fetchall()
    seen: set[str] = set()
    company_ids: list[str] = []
    for row in rows:
        company_id = str(row["company_hh_id"]).strip()
        if company_id and company_id not in seen:
            seen.add(company_id)
            company_ids.append(company_id)
    return company_ids


def fetch_trackable_postings(conn: sqlite3.Connection) -> list[Posting]:
    rows = conn.execute(
        """
        SELECT id, hh_vacancy_id, normalized_title, area_id, schedule_id
        FROM vacancy
        WHERE normalized_title IS NOT NULL
          AND status = 'active'
        ORDER BY id
        """
    ).fetchall()
    return [
        Posting(
            id=int(row["id"]),
            external_id=int(row["hh_vacancy_id"]),
            normalized_title=row["normalized_title"],
            area_id=row["area_id"],
            schedule_id=row["schedule_id"],
        )
        for row in rows
    ]


def create_report(conn: sqlite3.Connection, total_vacancies: int) -> int:
    cur = conn.execute(
        "INSERT INTO report (status, total_vacancies, created_at) VALUES (?, ?, ?)",
        (ReportStatus.PENDING.value, total_vacancies, utc_now_iso()),
    )
    conn.commit()
    return int(cur.lastrowid)


def finalize_report(
    conn: sqlite3.Connection,
    report_id: int,
    status: ReportStatus,
    processed_vacancies: int,
    error_message: str | None = None,
) -> None:
    conn.execute(
        """
        UPDATE report
        SET status = ?, processed_vacancies = ?, error_message = ?, completed_at = ?
        WHERE id = ? AND status = ?
        """,
        (
            status.value,
            processed_vacancies,
            error_message,
            utc_now_iso(),
            report_id,
            ReportStatus.PENDING.value,
        ),
    )
    conn.commit()


def insert_position_reports(
    conn: sqlite3.Connection,
    report_id: int,
    outcomes: Iterable[PositionOutcome],
) -> None:
    conn.executemany(
        """
        INSERT INTO position_report (
            report_id, vacancy_id, position_status, position, competitors_count, error_message
        )
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            (
                report_id,
                o.posting_id,
                o.status.value,
                o.position,
                o.competitors_count,
                o.error_message or None,
            )
            for o in outcomes
        ],
    )
    conn.commit()


def fetch_report(conn: sqlite3.Connection, report_id: int) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM report WHERE id = ?", (report_id,)).fetchone()


def fetch_company_vacancies(conn: sqlite3.Connection, company_hh_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT id, hh_vacancy_id, raw_title, status FROM vacancy WHERE company_hh_id = ?",
        (company_hh_id,),
    ).fetchall()


def vacancy_row_from_api(company_hh_id: str, item: dict[str, Any]) -> dict[str, Any]:
    area = item.get("area") or {}
    schedule = item.get("schedule") or {}
    salary = item.get("salary") or {}
    gross = salary.get("gross")
    return {
        "company_hh_id": company_hh_id,
        "hh_vacancy_id": int(item["id"]),
        "raw_title": str(item.get("name") or ""),
        "area_id": as_int_or_none(area.get("id")),
        "area_name": area.get("name"),
        "schedule_id": schedule.get("id"),
        "url": item.get("alternate_url"),
        "published_at": item.get("published_at"),
        "salary_from": as_int_or_none(salary.get("from")),
        "salary_to": as_int_or_none(salary.get("to")),
        "salary_currency": salary.get("currency"),
        "salary_gross": None if gross is None else (1 if gross else 0),
    }


def insert_vacancies(conn: sqlite3.Connection, rows: list[dict[str, Any]]) -> None:
    now = utc_now_iso()
    conn.executemany(
        """
        INSERT INTO vacancy (
            company_hh_id, hh_vacancy_id, raw_title, area_id, area_name, schedule_id,
            url, status, published_at, salary_from, salary_to, salary_currency,
            salary_gross, first_seen_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                r["company_hh_id"],
                r["hh_vacancy_id"],
                r["raw_title"],
                r["area_id"],
                r["area_name"],
                r["schedule_id"],
                r["url"],
                r["published_at"],
                r["salary_from"],
                r["salary_to"],
                r["salary_currency"],
                r["salary_gross"],
                now,
                now,
            )
            for r in rows
        ],
    )


def set_vacancy_status(conn: sqlite3.Connection, vacancy_ids: list[int], status: str) -> None:
    if not vacancy_ids:
        return
    placeholders = ",".join("?" for _ in vacancy_ids)
    conn.execute(
        f"UPDATE vacancy SET status = ?, updated_at = ? WHERE id IN ({placeholders})",
        (status, utc_now_iso(), *vacancy_ids),
    )


def reset_vacancy_title(conn: sqlite3.Connection, vacancy_id: int, raw_title: str) -> None:
    conn.execute(
        """
        UPDATE vacancy
        SET raw_title = ?, normalized_title = NULL, updated_at = ?
        WHERE id = ?
        """,
        (raw_title, utc_now_iso(), vacancy_id),
    )


def close_orphaned_vacancies(conn: sqlite3.Connection) -> int:
    cur = conn.execute(
        """
        UPDATE vacancy
        SET status = 'closed', updated_at = ?
        WHERE status = 'active'
          AND company_hh_id NOT IN (SELECT company_hh_id FROM profile)
        """,
        (utc_now_iso(),),
    )
    conn.commit()
    return cur.rowcount


def fetch_pending_normalization(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT id, raw_title
        FROM vacancy
        WHERE normalized_title IS NULL
          AND status = 'active'
        ORDER BY id
        """
    ).fetchall()


def save_normalized_titles(conn: sqlite3.Connection, titles: dict[int, str]) -> int:
    updated = 0
    now = utc_now_iso()
    for vacancy_id, title in titles.items():
        cur = conn.execute(
            "UPDATE vacancy SET normalized_title = ?, updated_at = ? WHERE id = ?",
            (title, now, vacancy_id),
        )
        updated += cur.rowcount
    conn.commit()
    return updated


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict]:
    return [dict(row) for row in rows]
