from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from profilehub.db.models import EnrichmentStatus, Researcher, Sector
from profilehub.logging_utils import structured_log
from profilehub.services.domains.collectors.errors import PersistenceError
from profilehub.services.domains.merge.types import (
    EnrichmentCandidate,
    EnrichmentResult,
    Provenance,
)

logger = logging.getLogger(__name__)

ENRICHMENT_STATUS_ORDER = {
    EnrichmentStatus.PENDING: 0,
    EnrichmentStatus.PARTIAL: 1,
    EnrichmentStatus.COMPLETE: 2,
}

PENDING_ENRICHMENT_STATUSES = (EnrichmentStatus.PENDING, EnrichmentStatus.PARTIAL)

_ACADEMIA_MARKERS = ("professor", "universidade", "university", "pesquisador", "researcher")
_GOVERNMENT_MARKERS = ("secretaria", "ministério", "ministerio", "governo", "prefeitura")
_NGO_MARKERS = ("ong", "instituto", "fundação", "fundacao")


def _contains_marker(text: str, markers: tuple[str, ...]) -> bool:
    words = text.split()
    for marker in markers:
        # Short markers must match a whole word ("ong" inside "congresso" is not an NGO).
        if len(marker) <= 3:
            if marker in words:
                return True
        elif marker in text:
            return True
    return False


def guess_sector(job_title: str | None, company: str | None) -> Sector:
    text = " ".join(part for part in (job_title, company) if part).lower()
    if _contains_marker(text, _ACADEMIA_MARKERS):
        return Sector.ACADEMIA
    if _contains_marker(text, _GOVERNMENT_MARKERS):
        return Sector.GOVERNMENT
    if _contains_marker(text, _NGO_MARKERS):
        return Sector.NGO
    if company and company.strip():
        return Sector.PRIVATE
    return Sector.UNKNOWN


def advance_status(
    current: EnrichmentStatus,
    requested: EnrichmentStatus,
) -> tuple[EnrichmentStatus, bool]:
    if ENRICHMENT_STATUS_ORDER[requested] > ENRICHMENT_STATUS_ORDER[current]:
        return requested, True
    return current, False


async def apply_enrichment(
    db_session: AsyncSession,
    *,
    researcher_id: int,
    enrichment: EnrichmentCandidate,
    provenance: Provenance,
) -> EnrichmentResult:
    researcher = await db_session.get(Researcher, researcher_id)
    if researcher is None:
        raise PersistenceError(f"Researcher {researcher_id} disappeared before enrichment.")

    status, advanced = advance_status(researcher.enrichment_status, enrichment.status)
    updated = advanced
    if advanced:
        researcher.enrichment_status = status

    if researcher.current_sector == Sector.UNKNOWN:
        sector = enrichment.sector or guess_sector(
            researcher.current_job_title,
            researcher.current_company,
        )
        if sector != Sector.UNKNOWN:
            researcher.current_sector = sector
            updated = True

    researcher.last_enriched_at = provenance.observed_at
    await db_session.flush()
    structured_log(
        logger,
        "info" if advanced else "debug",
        "merge.enrichment_applied",
        researcher_id=researcher_id,
        enrichment_status=status.value,
        advanced=advanced,
        source=provenance.source,
    )
    return EnrichmentResult(
        researcher_id=researcher_id,
        advanced=advanced,
        updated=updated,
        status=status,
    )


async def list_pending_enrichment(
    db_session: AsyncSession,
    *,
    limit: int,
) -> list[Researcher]:
    result = await db_session.execute(
        select(Researcher)
        .where(
            Researcher.enrichment_status.in_(PENDING_ENRICHMENT_STATUSES),
            or_(Researcher.professional_url.is_(None), Researcher.professional_url == ""),
        )
        .order_by(Researcher.created_at.asc(), Researcher.id.asc())
        .limit(max(1, int(limit)))
    )
    return list(result.scalars().all())
