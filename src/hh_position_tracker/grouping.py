from __future__ import annotations

from typing import Iterable

from .models import GroupKey, Posting


def group_key(posting: Posting) -> GroupKey:
    return GroupKey(posting.normalized_title, posting.area_id, posting.schedule_id)


def group_postings(postings: Iterable[Posting]) -> dict[GroupKey, list[Posting]]:
    """Partition postings into groups that share one identical search query.

    The search API only takes (text, area, schedule), so postings agreeing on
    all three would produce the same request. Keys are compared exactly and
    groups keep the order in which their first posting was seen.
    """
    groups: dict[GroupKey, list[Posting]] = {}
    for posting in postings:
        groups.setdefault(group_key(posting), []).append(posting)
    return groups
