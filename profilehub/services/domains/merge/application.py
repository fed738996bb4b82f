from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
import logging
from typing import Any

from sqlalchemy import Enum, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.db.models import (
    RESEARCH_FIELD_UNKNOWN,
    EnrichmentStatus,
    Publication,
    Researcher,
    Sector,
)
from profilehub.logging_utils import structured_log
from profilehub.services.domains.collectors.errors import (
    CandidateValidationError,
    PersistenceError,
)
from profilehub.services.domains.merge.enrichment import apply_enrichment
from profilehub.services.domains.merge.fields import (
    PUBLICATION_MERGE_FIELDS,
    RESEARCHER_MERGE_FIELDS,
    SENTINEL_EMPTY_FIELDS,
    is_effectively_empty,
    merge_keywords,
    merge_scalar,
    normalize_keywords,
)
from profilehub.services.domains.merge.types import (
    MergeOutcome,
    Provenance,
    PublicationCandidate,
    PublicationUpsertResult,
    RecordCandidate,
    ResearcherCandidate,
    ResearcherPublicationUpsertResult,
    ResearcherUpsertResult,
)

logger = logging.getLogger(__name__)

IDENTITY_RACE_RETRIES = 1


def _identity_text(value: str | None) -> str:
    return (value or "").strip()


def validate_researcher_candidate(candidate: ResearcherCandidate) -> None:
    missing = [
        field_name
        for field_name, value in (
            ("name", candidate.name),
            ("institution", candidate.institution),
            ("graduation_year", candidate.graduation_year),
        )
        if is_effectively_empty(field_name, value)
    ]
    if missing:
        raise CandidateValidationError(
            f"Researcher candidate is missing required fields: {', '.join(missing)}."
        )


def validate_publication_candidate(candidate: PublicationCandidate) -> None:
    missing = [
        field_name
        for field_name, value in (
            ("title", candidate.title),
            ("defense_year", candidate.defense_year),
            ("institution", candidate.institution),
        )
        if is_effectively_empty(field_name, value)
    ]
    if missing:
        raise CandidateValidationError(
            f"Publication candidate is missing required fields: {', '.join(missing)}."
        )


async def find_researcher_by_identity(
    db_session: AsyncSession,
    *,
    name: str,
    institution: str,
    graduation_year: int,
) -> Researcher | None:
    result = await db_session.execute(
        select(Researcher)
        .where(
            Researcher.name == name,
            Researcher.institution == institution,
            Researcher.graduation_year == graduation_year,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_publication_by_identity(
    db_session: AsyncSession,
    *,
    researcher_id: int,
    title: str,
    defense_year: int,
) -> Publication | None:
    result = await db_session.execute(
        select(Publication)
        .where(
            Publication.researcher_id == researcher_id,
            Publication.title == title,
            Publication.defense_year == defense_year,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _create_researcher(candidate: ResearcherCandidate) -> Researcher:
    research_field = candidate.research_field
    if is_effectively_empty("research_field", research_field):
        research_field = RESEARCH_FIELD_UNKNOWN
    researcher = Researcher(
        name=_identity_text(candidate.name),
        institution=_identity_text(candidate.institution),
        graduation_year=int(candidate.graduation_year),
        research_field=research_field,
        current_sector=Sector.UNKNOWN,
        enrichment_status=EnrichmentStatus.PENDING,
    )
    for field_name in RESEARCHER_MERGE_FIELDS:
        if field_name == "research_field":
            continue
        value = getattr(candidate, field_name)
        if not is_effectively_empty(field_name, value):
            setattr(researcher, field_name, value)
    return researcher


def pending_fills(row: Researcher | Publication, candidate, field_names: tuple[str, ...]) -> dict[str, Any]:
    """Fields the candidate would fill on ``row`` as last read by this session."""
    pending: dict[str, Any] = {}
    for field_name in field_names:
        merged, changed = merge_scalar(
            field_name,
            getattr(row, field_name),
            getattr(candidate, field_name),
        )
        if changed:
            pending[field_name] = merged
    return pending


def _still_empty(model: type[Researcher] | type[Publication], field_name: str):
    column = model.__table__.c[field_name]
    if isinstance(column.type, Enum):
        return column.is_(None)
    stripped = func.trim(column)
    condition = or_(column.is_(None), stripped == "")
    if field_name in SENTINEL_EMPTY_FIELDS:
        condition = or_(condition, func.lower(stripped) == RESEARCH_FIELD_UNKNOWN)
    return condition


async def fill_empty_fields(
    db_session: AsyncSession,
    row: Researcher | Publication,
    values: dict[str, Any],
) -> list[str]:
    """Write each value only while its column is still empty in the database.

    The emptiness check is part of the UPDATE, so a value committed by another
    session after ``row`` was read is kept and this write becomes a no-op.
    The row is refreshed afterwards to reflect what is actually stored.
    """
    model = type(row)
    filled: list[str] = []
    for field_name, value in values.items():
        result = await db_session.execute(
            update(model)
            .where(model.id == row.id, _still_empty(model, field_name))
            .values({field_name: value, "updated_at": datetime.now(UTC)})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            filled.append(field_name)
    if values:
        await db_session.refresh(row)
    return filled


async def upsert_researcher(
    db_session: AsyncSession,
    candidate: ResearcherCandidate,
    *,
    provenance: Provenance,
) -> ResearcherUpsertResult:
    validate_researcher_candidate(candidate)
    researcher = await find_researcher_by_identity(
        db_session,
        name=_identity_text(candidate.name),
        institution=_identity_text(candidate.institution),
        graduation_year=int(candidate.graduation_year),
    )
    if researcher is None:
        researcher = _create_researcher(candidate)
        db_session.add(researcher)
        await db_session.flush()
        structured_log(
            logger,
            "debug",
            "merge.researcher_created",
            researcher_id=researcher.id,
            source=provenance.source,
        )
        return ResearcherUpsertResult(id=researcher.id, created=True, updated=False)

    changed_fields = await fill_empty_fields(
        db_session,
        researcher,
        pending_fills(researcher, candidate, RESEARCHER_MERGE_FIELDS),
    )
    if changed_fields:
        structured_log(
            logger,
            "debug",
            "merge.researcher_updated",
            researcher_id=researcher.id,
            source=provenance.source,
            fields=changed_fields,
        )
    return ResearcherUpsertResult(
        id=researcher.id,
        created=False,
        updated=bool(changed_fields),
    )


async def upsert_publication(
    db_session: AsyncSession,
    researcher_id: int,
    candidate: PublicationCandidate,
) -> PublicationUpsertResult:
    validate_publication_candidate(candidate)
    title = _identity_text(candidate.title)
    publication = await find_publication_by_identity(
        db_session,
        researcher_id=researcher_id,
        title=title,
        defense_year=int(candidate.defense_year),
    )
    if publication is None:
        publication = Publication(
            researcher_id=researcher_id,
            title=title,
            defense_year=int(candidate.defense_year),
            institution=_identity_text(candidate.institution),
            keywords=normalize_keywords(candidate.keywords),
        )
        for field_name in PUBLICATION_MERGE_FIELDS:
            value = getattr(candidate, field_name)
            if not is_effectively_empty(field_name, value):
                setattr(publication, field_name, value)
        db_session.add(publication)
        await db_session.flush()
        structured_log(
            logger,
            "debug",
            "merge.publication_created",
            researcher_id=researcher_id,
            publication_id=publication.id,
        )
        return PublicationUpsertResult(id=publication.id, created=True, updated=False)

    changed_fields = await fill_empty_fields(
        db_session,
        publication,
        pending_fills(publication, candidate, PUBLICATION_MERGE_FIELDS),
    )
    keywords, keywords_changed = merge_keywords(publication.keywords, candidate.keywords)
    if keywords_changed:
        # Assign a new list so the JSON column is flagged dirty.
        publication.keywords = keywords
        await db_session.flush()
        changed_fields.append("keywords")
    if changed_fields:
        structured_log(
            logger,
            "debug",
            "merge.publication_updated",
            researcher_id=researcher_id,
            publication_id=publication.id,
            fields=changed_fields,
        )
    return PublicationUpsertResult(
        id=publication.id,
        created=False,
        updated=bool(changed_fields),
    )


def _with_default_institution(
    publication: PublicationCandidate,
    researcher: ResearcherCandidate,
) -> PublicationCandidate:
    if is_effectively_empty("institution", publication.institution):
        return replace(publication, institution=researcher.institution)
    return publication


async def upsert_researcher_with_publication(
    db_session: AsyncSession,
    researcher: ResearcherCandidate,
    publication: PublicationCandidate,
    *,
    provenance: Provenance,
) -> ResearcherPublicationUpsertResult:
    # Not atomic across the two upserts; both lookups are idempotent so a retry is safe.
    validate_publication_candidate(_with_default_institution(publication, researcher))
    researcher_result = await upsert_researcher(
        db_session,
        researcher,
        provenance=provenance,
    )
    publication_result = await upsert_publication(
        db_session,
        researcher_result.id,
        _with_default_institution(publication, researcher),
    )
    return ResearcherPublicationUpsertResult(
        researcher=researcher_result,
        publication=publication_result,
    )


async def merge_record(
    db_session: AsyncSession,
    record: RecordCandidate,
    *,
    enrichment_allowed: bool,
) -> MergeOutcome:
    publication_result = None
    if record.publication is not None:
        combined = await upsert_researcher_with_publication(
            db_session,
            record.researcher,
            record.publication,
            provenance=record.provenance,
        )
        researcher_result = combined.researcher
        publication_result = combined.publication
    else:
        researcher_result = await upsert_researcher(
            db_session,
            record.researcher,
            provenance=record.provenance,
        )

    enrichment_result = None
    if record.enrichment is not None:
        if enrichment_allowed:
            enrichment_result = await apply_enrichment(
                db_session,
                researcher_id=researcher_result.id,
                enrichment=record.enrichment,
                provenance=record.provenance,
            )
        else:
            structured_log(
                logger,
                "warning",
                "merge.enrichment_ignored",
                researcher_id=researcher_result.id,
                source=record.provenance.source,
            )

    return MergeOutcome(
        researcher=researcher_result,
        publication=publication_result,
        enrichment=enrichment_result,
    )


async def apply_candidate(
    session_factory: async_sessionmaker[AsyncSession],
    record: RecordCandidate,
    *,
    enrichment_allowed: bool = False,
) -> MergeOutcome:
    """Merge one candidate in its own session and commit it.

    A concurrent insert of the same identity key by another collector surfaces
    as an IntegrityError; the candidate is retried once against the row that
    now exists. Other storage failures become PersistenceError.
    """
    attempt = 0
    while True:
        try:
            async with session_factory() as db_session:
                outcome = await merge_record(
                    db_session,
                    record,
                    enrichment_allowed=enrichment_allowed,
                )
                await db_session.commit()
                return outcome
        except IntegrityError as exc:
            if attempt < IDENTITY_RACE_RETRIES:
                attempt += 1
                structured_log(
                    logger,
                    "info",
                    "merge.identity_race_retry",
                    source=record.provenance.source,
                    attempt=attempt,
                )
                continue
            raise PersistenceError(f"Could not store candidate: {exc.orig or exc}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not store candidate: {exc}") from exc
