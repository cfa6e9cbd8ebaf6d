from __future__ import annotations

from collections import Counter

from wayback_analyzer.classifier import CONTENT_TYPES
from wayback_analyzer.models import ArchivedUrlRecord

SORT_FIELDS = {"timestamp", "status", "url", "content_type"}


def count_by_type(records: list[ArchivedUrlRecord]) -> dict[str, int]:
    counts = Counter(r.content_type for r in records)
    return {label: counts.get(label, 0) for label in CONTENT_TYPES}


def filter_records(records: list[ArchivedUrlRecord], content_type: str | None) -> list[ArchivedUrlRecord]:
    if not content_type:
        return list(records)
    return [r for r in records if r.content_type == content_type]


def sort_records(records: list[ArchivedUrlRecord], field: str = "url", descending: bool = False) -> list[ArchivedUrlRecord]:
    if field not in SORT_FIELDS:
        field = "url"
    return sorted(records, key=lambda r: getattr(r, field), reverse=descending)
