from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple


class PositionStatus(str, Enum):
    RANKED = "ranked"
    # On the platform but past the single fetched page; rank is at least the page size.
    BEYOND_PAGE = "beyond_page"
    NOT_FOUND = "not_found"
    ERROR = "error"


class ReportStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Posting:
    id: int
    external_id: int
    normalized_title: str
    area_id: int
    schedule_id: str


class GroupKey(NamedTuple):
    normalized_title: str
    area_id: int
    schedule_id: str


@dataclass
class SearchResult:
    found: int
    pages: int
    item_ids: list[int] = field(default_factory=list)


@dataclass
class PositionOutcome:
    posting_id: int
    status: PositionStatus
    competitors_count: int
    position: int | None = None
    error_message: str = ""


@dataclass
class ReportResult:
    report_id: int
    status: ReportStatus
    total_vacancies: int
    processed_vacancies: int
    groups_total: int
    groups_failed: int
    outcomes: list[PositionOutcome] = field(default_factory=list)

    def as_stats(self) -> dict:
        counts: dict[str, int] = {status.value: 0 for status in PositionStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return {
            "report_id": self.report_id,
            "status": self.status.value,
            "total_vacancies": self.total_vacancies,
            "processed_vacancies": self.processed_vacancies,
            "groups_total": self.groups_total,
            "groups_failed": self.groups_failed,
            "positions": counts,
        }
