from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from profilehub.db.models import RESEARCH_FIELD_UNKNOWN

# Only this field treats the "unknown" sentinel as a missing value.
SENTINEL_EMPTY_FIELDS = frozenset({"research_field"})

RESEARCHER_MERGE_FIELDS = (
    "degree_level",
    "research_field",
    "email",
    "professional_url",
    "cv_url",
    "current_city",
    "current_state",
    "current_job_title",
    "current_company",
)

PUBLICATION_MERGE_FIELDS = (
    "abstract",
    "advisor_name",
    "source_url",
    "program",
)


def is_effectively_empty(field: str, value: Any) -> bool:
    """Return True when ``value`` counts as "no value yet" for ``field``."""
    if value is None:
        return True
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return True
        if field in SENTINEL_EMPTY_FIELDS and stripped.lower() == RESEARCH_FIELD_UNKNOWN:
            return True
    return False


def merge_scalar(field: str, existing: Any, incoming: Any) -> tuple[Any, bool]:
    """Monotonic merge: a filled value is never replaced.

    Returns the value to store and whether it differs from ``existing``.
    """
    if is_effectively_empty(field, incoming):
        return existing, False
    if is_effectively_empty(field, existing):
        return incoming, True
    return existing, False


def normalize_keywords(values: Iterable[Any] | None) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for value in values or ():
        if value is None:
            continue
        keyword = str(value).strip()
        if not keyword or keyword in seen:
            continue
        seen.add(keyword)
        normalized.append(keyword)
    return normalized


def merge_keywords(
    existing: Iterable[str] | None,
    incoming: Iterable[str] | None,
) -> tuple[list[str], bool]:
    merged = list(existing or [])
    seen = set(merged)
    changed = False
    for keyword in normalize_keywords(incoming):
        if keyword in seen:
            continue
        seen.add(keyword)
        merged.append(keyword)
        changed = True
    return merged, changed
