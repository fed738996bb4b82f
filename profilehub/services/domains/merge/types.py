from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from profilehub.db.models import DegreeLevel, EnrichmentStatus, Sector


@dataclass(frozen=True)
class Provenance:
    source: str
    observed_at: datetime

    @classmethod
    def now(cls, source: str) -> Provenance:
        return cls(source=source, observed_at=datetime.now(UTC))


@dataclass(frozen=True)
class ResearcherCandidate:
    name: str | None
    institution: str | None
    graduation_year: int | None
    degree_level: DegreeLevel | None = None
    research_field: str | None = None
    email: str | None = None
    professional_url: str | None = None
    cv_url: str | None = None
    current_city: str | None = None
    current_state: str | None = None
    current_job_title: str | None = None
    current_company: str | None = None


@dataclass(frozen=True)
class PublicationCandidate:
    title: str | None
    defense_year: int | None
    institution: str | None = None
    program: str | None = None
    abstract: str | None = None
    advisor_name: str | None = None
    keywords: tuple[str, ...] = ()
    source_url: str | None = None


@dataclass(frozen=True)
class EnrichmentCandidate:
    status: EnrichmentStatus = EnrichmentStatus.PARTIAL
    sector: Sector | None = None


@dataclass(frozen=True)
class RecordCandidate:
    researcher: ResearcherCandidate
    provenance: Provenance
    publication: PublicationCandidate | None = None
    enrichment: EnrichmentCandidate | None = None

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        source: str,
        observed_at: datetime | None = None,
    ) -> RecordCandidate:
        """Build a candidate from one producer record.

        Expected shape::

            {"researcher": {...}, "publication": {...} | null,
             "enrichment": {"status": "partial", "sector": "academia"} | null,
             "observed_at": "2026-10-18T12:00:00Z"}

        Missing identity fields are kept as ``None`` so validation happens
        at upsert time and is counted per record.
        """
        researcher_raw = _mapping(payload.get("researcher"))
        publication_raw = payload.get("publication")
        enrichment_raw = payload.get("enrichment")

        researcher = ResearcherCandidate(
            name=_optional_text(researcher_raw.get("name")),
            institution=_optional_text(researcher_raw.get("institution")),
            graduation_year=_optional_int(researcher_raw.get("graduation_year")),
            degree_level=_optional_enum(DegreeLevel, researcher_raw.get("degree_level")),
            research_field=_optional_text(researcher_raw.get("research_field")),
            email=_optional_text(researcher_raw.get("email")),
            professional_url=_optional_text(researcher_raw.get("professional_url")),
            cv_url=_optional_text(researcher_raw.get("cv_url")),
            current_city=_optional_text(researcher_raw.get("current_city")),
            current_state=_optional_text(researcher_raw.get("current_state")),
            current_job_title=_optional_text(researcher_raw.get("current_job_title")),
            current_company=_optional_text(researcher_raw.get("current_company")),
        )

        publication = None
        if isinstance(publication_raw, Mapping):
            keywords = publication_raw.get("keywords") or ()
            if isinstance(keywords, str):
                keywords = (keywords,)
            publication = PublicationCandidate(
                title=_optional_text(publication_raw.get("title")),
                defense_year=_optional_int(publication_raw.get("defense_year")),
                institution=_optional_text(publication_raw.get("institution")),
                program=_optional_text(publication_raw.get("program")),
                abstract=_optional_text(publication_raw.get("abstract")),
                advisor_name=_optional_text(publication_raw.get("advisor_name")),
                keywords=tuple(str(item) for item in keywords if item is not None),
                source_url=_optional_text(publication_raw.get("source_url")),
            )

        enrichment = None
        if isinstance(enrichment_raw, Mapping):
            enrichment = EnrichmentCandidate(
                status=_optional_enum(EnrichmentStatus, enrichment_raw.get("status"))
                or EnrichmentStatus.PARTIAL,
                sector=_optional_enum(Sector, enrichment_raw.get("sector")),
            )

        return cls(
            researcher=researcher,
            publication=publication,
            enrichment=enrichment,
            provenance=Provenance(
                source=source,
                observed_at=_optional_datetime(payload.get("observed_at"))
                or observed_at
                or datetime.now(UTC),
            ),
        )


@dataclass(frozen=True)
class ResearcherUpsertResult:
    id: int
    created: bool
    updated: bool


@dataclass(frozen=True)
class PublicationUpsertResult:
    id: int
    created: bool
    updated: bool


@dataclass(frozen=True)
class ResearcherPublicationUpsertResult:
    researcher: ResearcherUpsertResult
    publication: PublicationUpsertResult


@dataclass(frozen=True)
class EnrichmentResult:
    researcher_id: int
    advanced: bool
    updated: bool
    status: EnrichmentStatus


@dataclass(frozen=True)
class MergeOutcome:
    researcher: ResearcherUpsertResult
    publication: PublicationUpsertResult | None = None
    enrichment: EnrichmentResult | None = None

    @property
    def is_new(self) -> bool:
        if self.publication is not None:
            return self.publication.created
        if self.researcher.created:
            return True
        return self.enrichment is not None and self.enrichment.advanced


def _mapping(value: Any) -> Mapping[str, Any]:
    if isinstance(value, Mapping):
        return value
    return {}


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _optional_enum(enum_cls, value: Any):
    text = _optional_text(value)
    if text is None:
        return None
    try:
        return enum_cls(text.lower())
    except ValueError:
        return None


def _optional_datetime(value: Any) -> datetime | None:
    text = _optional_text(value)
    if text is None:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
