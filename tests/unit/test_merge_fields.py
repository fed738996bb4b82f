from __future__ import annotations

from datetime import UTC, datetime

from profilehub.db.models import DegreeLevel, EnrichmentStatus, Sector
from profilehub.services.domains.merge.fields import (
    is_effectively_empty,
    merge_keywords,
    merge_scalar,
    normalize_keywords,
)
from profilehub.services.domains.merge.types import RecordCandidate


def test_is_effectively_empty_treats_blank_strings_as_missing() -> None:
    assert is_effectively_empty("email", None)
    assert is_effectively_empty("email", "")
    assert is_effectively_empty("email", "   ")
    assert not is_effectively_empty("email", "maria@example.org")
    assert not is_effectively_empty("graduation_year", 0)


def test_unknown_sentinel_is_empty_only_for_research_field() -> None:
    assert is_effectively_empty("research_field", "unknown")
    assert is_effectively_empty("research_field", " Unknown ")
    assert not is_effectively_empty("current_company", "unknown")
    assert not is_effectively_empty("research_field", "Ecologia")


def test_merge_scalar_fills_empty_and_never_overwrites() -> None:
    assert merge_scalar("current_company", None, "Instituto X") == ("Instituto X", True)
    assert merge_scalar("current_company", "", "Instituto X") == ("Instituto X", True)
    assert merge_scalar("current_company", "Instituto X", "Instituto Y") == ("Instituto X", False)
    assert merge_scalar("current_company", "Instituto X", None) == ("Instituto X", False)
    assert merge_scalar("current_company", "Instituto X", "") == ("Instituto X", False)


def test_merge_scalar_replaces_research_field_sentinel() -> None:
    assert merge_scalar("research_field", "unknown", "Ecologia") == ("Ecologia", True)
    assert merge_scalar("research_field", "Ecologia", "unknown") == ("Ecologia", False)


def test_normalize_keywords_strips_and_deduplicates_in_order() -> None:
    assert normalize_keywords([" soil ", "water", "soil", "", None, "Water"]) == [
        "soil",
        "water",
        "Water",
    ]
    assert normalize_keywords(None) == []


def test_merge_keywords_appends_only_new_keywords() -> None:
    merged, changed = merge_keywords(["soil", "water"], ["water", "pantanal", " soil "])
    assert merged == ["soil", "water", "pantanal"]
    assert changed is True

    merged, changed = merge_keywords(["soil"], ["soil", ""])
    assert merged == ["soil"]
    assert changed is False


def test_record_candidate_from_payload_parses_nested_record() -> None:
    record = RecordCandidate.from_payload(
        {
            "researcher": {
                "name": "  Maria Silva Santos ",
                "institution": "UFMS",
                "graduation_year": "2020",
                "degree_level": "PhD",
                "current_company": "",
            },
            "publication": {
                "title": "Hidrologia do Pantanal",
                "defense_year": 2020,
                "keywords": ["pantanal", None, "hidrologia"],
            },
            "enrichment": {"status": "complete", "sector": "academia"},
            "observed_at": "2026-10-01T08:30:00Z",
        },
        source="bdtd",
    )

    assert record.researcher.name == "Maria Silva Santos"
    assert record.researcher.graduation_year == 2020
    assert record.researcher.degree_level == DegreeLevel.PHD
    assert record.researcher.current_company is None
    assert record.publication is not None
    assert record.publication.keywords == ("pantanal", "hidrologia")
    assert record.enrichment is not None
    assert record.enrichment.status == EnrichmentStatus.COMPLETE
    assert record.enrichment.sector == Sector.ACADEMIA
    assert record.provenance.source == "bdtd"
    assert record.provenance.observed_at == datetime(2026, 10, 1, 8, 30, tzinfo=UTC)


def test_record_candidate_from_payload_keeps_invalid_values_as_missing() -> None:
    observed_at = datetime(2026, 10, 18, tzinfo=UTC)
    record = RecordCandidate.from_payload(
        {
            "researcher": {"name": "Ana", "graduation_year": "twenty", "degree_level": "bachelor"},
            "publication": "not-a-mapping",
        },
        source="ufms",
        observed_at=observed_at,
    )

    assert record.researcher.institution is None
    assert record.researcher.graduation_year is None
    assert record.researcher.degree_level is None
    assert record.publication is None
    assert record.enrichment is None
    assert record.provenance.observed_at == observed_at
