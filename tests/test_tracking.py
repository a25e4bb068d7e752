from __future__ import annotations

import sqlite3
import tempfile
import unittest
from pathlib import Path

import httpx

from hh_position_tracker.db import (
    connect,
    fetch_report,
    fetch_trackable_postings,
    init_db,
    insert_vacancies,
    save_normalized_titles,
    vacancy_row_from_api,
)
from hh_position_tracker.http_client import GroupThrottle, HhClient, RetryPolicy
from hh_position_tracker.models import PositionStatus, Posting, ReportStatus
from hh_position_tracker.tracking import resolve_group, track_positions

API_URL = "https://api.hh.ru/vacancies"


def fetch_position_reports(conn: sqlite3.Connection, report_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM position_report WHERE report_id = ? ORDER BY id",
        (report_id,),
    ).fetchall()


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class SearchStub:
    """Answers searches by the ``text`` parameter; unknown terms get an empty page."""

    def __init__(self, replies: dict[str, tuple[int, dict]]) -> None:
        self.replies = replies
        self.requests: list[httpx.Request] = []
        self.on_request = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        text = request.url.params["text"]
        status, body = self.replies.get(text, (200, {"found": 0, "pages": 0, "items": []}))
        return httpx.Response(status, json=body)


def _page(ids: list[int], found: int, pages: int) -> tuple[int, dict]:
    return 200, {"found": found, "pages": pages, "items": [{"id": str(i)} for i in ids]}


def _vacancy(hh_id: int, area: int = 1, schedule: str = "fullDay") -> dict:
    return {
        "id": str(hh_id),
        "name": f"vacancy {hh_id}",
        "area": {"id": str(area), "name": "Москва"},
        "schedule": {"id": schedule},
        "alternate_url": f"https://hh.ru/vacancy/{hh_id}",
    }


class TrackingTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.db_path = Path(self.tmp.name) / "tracker.sqlite"
        self.conn = connect(self.db_path)
        self.addCleanup(self.conn.close)
        init_db(self.conn)
        self.client_sleep = RecordingSleep()
        self.throttle_sleep = RecordingSleep()

    def _seed(self, vacancies: list[tuple[int, str, int, str]]) -> list[Posting]:
        rows = [vacancy_row_from_api("42", _vacancy(hh_id, area, schedule)) for hh_id, _, area, schedule in vacancies]
        with self.conn:
            insert_vacancies(self.conn, rows)
        ids = {
            int(row["hh_vacancy_id"]): int(row["id"])
            for row in self.conn.execute("SELECT id, hh_vacancy_id FROM vacancy").fetchall()
        }
        save_normalized_titles(self.conn, {ids[hh_id]: title for hh_id, title, _, _ in vacancies})
        return fetch_trackable_postings(self.conn)

    def _client(self, stub: SearchStub) -> HhClient:
        client = HhClient(
            base_url=API_URL,
            user_agent="tracker-tests/1.0",
            timeout_seconds=5,
            retry_policy=RetryPolicy(max_attempts=5, base_delay_seconds=2.0),
            transport=httpx.MockTransport(stub),
            sleep=self.client_sleep,
        )
        self.addAsyncCleanup(client.aclose)
        return client

    def _throttle(self) -> GroupThrottle:
        return GroupThrottle(0.5, sleep=self.throttle_sleep)


class ResolveGroupTests(TrackingTestCase):
    async def test_ranks_and_beyond_page_sentinel(self) -> None:
        postings = self._seed([(500, "Токарь", 1, "fullDay"), (600, "Токарь", 1, "fullDay")])
        stub = SearchStub({"Токарь": _page([1, 2, 3, 4, 500, 7], found=150, pages=2)})

        outcomes = await resolve_group(self._client(stub), postings)

        by_posting = {o.posting_id: o for o in outcomes}
        x, y = postings
        self.assertEqual(by_posting[x.id].status, PositionStatus.RANKED)
        self.assertEqual(by_posting[x.id].position, 5)
        self.assertEqual(by_posting[y.id].status, PositionStatus.BEYOND_PAGE)
        self.assertIsNone(by_posting[y.id].position)
        self.assertEqual({o.competitors_count for o in outcomes}, {150})
        self.assertEqual(len(stub.requests), 1)

    async def test_absent_on_single_page_is_not_found(self) -> None:
        postings = self._seed([(500, "Токарь", 1, "fullDay")])
        stub = SearchStub({"Токарь": _page([1, 2], found=2, pages=1)})

        outcomes = await resolve_group(self._client(stub), postings)

        self.assertEqual(outcomes[0].status, PositionStatus.NOT_FOUND)
        self.assertEqual(outcomes[0].competitors_count, 2)

    async def test_exhausted_retries_mark_every_member_failed(self) -> None:
        postings = self._seed([(500, "Токарь", 1, "fullDay"), (600, "Токарь", 1, "fullDay")])
        stub = SearchStub({"Токарь": (429, {})})

        outcomes = await resolve_group(self._client(stub), postings)

        self.assertEqual(len(stub.requests), 5)
        self.assertEqual([o.status for o in outcomes], [PositionStatus.ERROR, PositionStatus.ERROR])
        self.assertEqual([o.competitors_count for o in outcomes], [0, 0])
        self.assertTrue(all(o.error_message for o in outcomes))


class TrackPositionsTests(TrackingTestCase):
    async def test_completed_report_with_grouped_searches(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (102, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
            ]
        )
        stub = SearchStub(
            {
                "Токарь": _page([9, 102, 101], found=40, pages=1),
                "Бухгалтер": _page([201], found=12, pages=1),
            }
        )

        result = await track_positions(self.conn, self._client(stub), postings, self._throttle())

        self.assertEqual(len(stub.requests), 2)
        self.assertEqual(result.groups_total, 2)
        self.assertEqual(result.groups_failed, 0)
        self.assertEqual(result.status, ReportStatus.COMPLETED)

        report = fetch_report(self.conn, result.report_id)
        self.assertEqual(report["status"], "completed")
        self.assertEqual(report["total_vacancies"], 3)
        self.assertEqual(report["processed_vacancies"], 3)
        self.assertIsNotNone(report["completed_at"])

        rows = fetch_position_reports(self.conn, result.report_id)
        positions = {row["vacancy_id"]: (row["position_status"], row["position"], row["competitors_count"]) for row in rows}
        by_hh = {p.external_id: p.id for p in postings}
        self.assertEqual(positions[by_hh[101]], ("ranked", 3, 40))
        self.assertEqual(positions[by_hh[102]], ("ranked", 2, 40))
        self.assertEqual(positions[by_hh[201]], ("ranked", 1, 12))

    async def test_report_is_pending_while_searching(self) -> None:
        postings = self._seed([(101, "Токарь", 1, "fullDay")])
        stub = SearchStub({"Токарь": _page([101], found=1, pages=1)})
        seen_statuses: list[str] = []
        stub.on_request = lambda _request: seen_statuses.append(
            self.conn.execute("SELECT status FROM report ORDER BY id DESC LIMIT 1").fetchone()["status"]
        )

        await track_positions(self.conn, self._client(stub), postings, self._throttle())

        self.assertEqual(seen_statuses, ["pending"])

    async def test_failed_group_does_not_stop_the_run(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
            ]
        )
        stub = SearchStub(
            {
                "Токарь": (429, {}),
                "Бухгалтер": _page([201], found=12, pages=1),
            }
        )

        result = await track_positions(self.conn, self._client(stub), postings, self._throttle())

        self.assertEqual(result.groups_failed, 1)
        self.assertEqual(self.client_sleep.calls, [2.0, 4.0, 8.0, 16.0])
        rows = {row["vacancy_id"]: row for row in fetch_position_reports(self.conn, result.report_id)}
        by_hh = {p.external_id: p.id for p in postings}
        failed = rows[by_hh[101]]
        self.assertEqual(failed["position_status"], "error")
        self.assertIsNone(failed["position"])
        self.assertEqual(failed["competitors_count"], 0)
        self.assertTrue(failed["error_message"])
        self.assertEqual(rows[by_hh[201]]["position"], 1)
        self.assertEqual(fetch_report(self.conn, result.report_id)["status"], "completed")

    async def test_delay_only_between_groups(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
                (301, "Сварщик", 1, "fullDay"),
            ]
        )
        stub = SearchStub({})

        await track_positions(self.conn, self._client(stub), postings, self._throttle())

        self.assertEqual(self.throttle_sleep.calls, [0.5, 0.5])

    async def test_no_postings_completes_empty_report(self) -> None:
        stub = SearchStub({})

        result = await track_positions(self.conn, self._client(stub), [], self._throttle())

        self.assertEqual(stub.requests, [])
        report = fetch_report(self.conn, result.report_id)
        self.assertEqual(report["status"], "completed")
        self.assertEqual(report["total_vacancies"], 0)
        self.assertEqual(report["processed_vacancies"], 0)

    async def test_report_creation_failure_aborts_before_searching(self) -> None:
        postings = self._seed([(101, "Токарь", 1, "fullDay")])
        stub = SearchStub({})
        client = self._client(stub)
        self.conn.close()

        with self.assertRaises(sqlite3.ProgrammingError):
            await track_positions(self.conn, client, postings, self._throttle())

        self.assertEqual(stub.requests, [])
        reopened = connect(self.db_path)
        self.addCleanup(reopened.close)
        self.assertEqual(reopened.execute("SELECT COUNT(*) FROM report").fetchone()[0], 0)

    async def test_persistence_failure_marks_report_failed(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (102, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
            ]
        )
        self.conn.execute("DROP TABLE position_report")
        self.conn.commit()
        stub = SearchStub({"Токарь": _page([101], found=5, pages=1)})

        with self.assertRaises(sqlite3.OperationalError):
            await track_positions(self.conn, self._client(stub), postings, self._throttle())

        report = self.conn.execute("SELECT * FROM report ORDER BY id DESC LIMIT 1").fetchone()
        self.assertEqual(report["status"], "failed")
        self.assertEqual(report["processed_vacancies"], 3)
        self.assertLessEqual(report["processed_vacancies"], report["total_vacancies"])
        self.assertIn("position_report", report["error_message"])
        self.assertIsNotNone(report["completed_at"])

    async def test_failure_mid_run_keeps_outcomes_of_finished_groups(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (102, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
                (301, "Сварщик", 1, "fullDay"),
            ]
        )
        stub = SearchStub({"Токарь": _page([102], found=7, pages=1)})

        def explode_on_second_group(request: httpx.Request) -> None:
            if request.url.params["text"] == "Бухгалтер":
                raise RuntimeError("search backend exploded")

        stub.on_request = explode_on_second_group

        with self.assertRaises(RuntimeError):
            await track_positions(self.conn, self._client(stub), postings, self._throttle())

        self.assertEqual([r.url.params["text"] for r in stub.requests], ["Токарь", "Бухгалтер"])
        report = self.conn.execute("SELECT * FROM report ORDER BY id DESC LIMIT 1").fetchone()
        self.assertEqual(report["status"], "failed")
        self.assertEqual(report["total_vacancies"], 4)
        self.assertEqual(report["processed_vacancies"], 2)
        self.assertIn("exploded", report["error_message"])
        rows = fetch_position_reports(self.conn, report["id"])
        self.assertEqual(len(rows), report["processed_vacancies"])
        by_hh = {p.external_id: p.id for p in postings}
        self.assertEqual({row["vacancy_id"] for row in rows}, {by_hh[101], by_hh[102]})

    async def test_transport_error_only_fails_its_own_group(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
            ]
        )
        stub = SearchStub({"Бухгалтер": _page([201], found=3, pages=1)})

        def proxy_down(request: httpx.Request) -> None:
            if request.url.params["text"] == "Токарь":
                raise httpx.ProxyError("proxy refused the tunnel")

        stub.on_request = proxy_down

        result = await track_positions(self.conn, self._client(stub), postings, self._throttle())

        self.assertEqual([r.url.params["text"] for r in stub.requests], ["Токарь", "Бухгалтер"])
        self.assertEqual(result.status, ReportStatus.COMPLETED)
        self.assertEqual(result.groups_failed, 1)
        rows = {row["vacancy_id"]: row for row in fetch_position_reports(self.conn, result.report_id)}
        by_hh = {p.external_id: p.id for p in postings}
        self.assertEqual(rows[by_hh[101]]["position_status"], "error")
        self.assertIn("ProxyError", rows[by_hh[101]]["error_message"])
        self.assertEqual(rows[by_hh[201]]["position"], 1)

    async def test_throttle_reused_across_runs_starts_fresh(self) -> None:
        postings = self._seed(
            [
                (101, "Токарь", 1, "fullDay"),
                (201, "Бухгалтер", 1, "fullDay"),
            ]
        )
        stub = SearchStub({})
        client = self._client(stub)
        throttle = self._throttle()

        await track_positions(self.conn, client, postings, throttle)
        await track_positions(self.conn, client, postings, throttle)

        self.assertEqual(self.throttle_sleep.calls, [0.5, 0.5])

if __name__ == "__main__":
    unittest.main()
