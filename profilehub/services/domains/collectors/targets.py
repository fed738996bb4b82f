from __future__ import annotations

from collections.abc import Sequence
import re
import unicodedata

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.services.domains.collectors.types import CollectorTarget, TargetLoader
from profilehub.services.domains.merge.enrichment import list_pending_enrichment


def _slug(value: str) -> str:
    ascii_value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", ascii_value.lower()).strip("-")


def institution_targets(institutions: Sequence[str]) -> list[CollectorTarget]:
    return [
        CollectorTarget(
            key=f"institution:{_slug(institution)}",
            label=institution,
            params={"institution": institution},
        )
        for institution in institutions
    ]


def static_institution_loader(institutions: Sequence[str]) -> TargetLoader:
    targets = institution_targets(institutions)

    async def load(_session_factory: async_sessionmaker[AsyncSession]) -> list[CollectorTarget]:
        return list(targets)

    return load


def pending_enrichment_loader(*, batch_size: int) -> TargetLoader:
    async def load(session_factory: async_sessionmaker[AsyncSession]) -> list[CollectorTarget]:
        async with session_factory() as db_session:
            researchers = await list_pending_enrichment(db_session, limit=batch_size)
        return [
            CollectorTarget(
                key=f"researcher:{researcher.id}",
                label=researcher.name,
                params={
                    "researcher_id": researcher.id,
                    "name": researcher.name,
                    "institution": researcher.institution,
                    "graduation_year": researcher.graduation_year,
                },
            )
            for researcher in researchers
        ]

    return load
