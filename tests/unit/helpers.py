from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime

from profilehub.services.domains.collectors.runner import RunnerSettings
from profilehub.services.domains.collectors.types import CollectorDefinition, CollectorTarget
from profilehub.services.domains.merge.types import (
    EnrichmentCandidate,
    Provenance,
    PublicationCandidate,
    RecordCandidate,
    ResearcherCandidate,
)

OBSERVED_AT = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def researcher_record(
    name: str = "Maria Silva Santos",
    institution: str = "UFMS",
    graduation_year: int = 2020,
    *,
    source: str = "sucupira",
    publication: PublicationCandidate | None = None,
    enrichment: EnrichmentCandidate | None = None,
    **fields,
) -> RecordCandidate:
    return RecordCandidate(
        researcher=ResearcherCandidate(
            name=name,
            institution=institution,
            graduation_year=graduation_year,
            **fields,
        ),
        publication=publication,
        enrichment=enrichment,
        provenance=Provenance(source=source, observed_at=OBSERVED_AT),
    )


def make_targets(count: int) -> list[CollectorTarget]:
    return [
        CollectorTarget(key=f"target:{index}", label=f"Target {index}", params={"index": index})
        for index in range(1, count + 1)
    ]


class FakeSource:
    """In-memory candidate source keyed by target key.

    A value that is an exception instance is raised instead of returned.
    """

    def __init__(
        self,
        results: Mapping[str, Sequence[RecordCandidate] | BaseException],
        *,
        enter_error: BaseException | None = None,
    ) -> None:
        self._results = dict(results)
        self._enter_error = enter_error
        self.fetched: list[str] = []
        self.entered = False
        self.exited = False

    async def __aenter__(self) -> FakeSource:
        if self._enter_error is not None:
            raise self._enter_error
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, traceback) -> None:
        self.exited = True

    async def fetch(self, target: CollectorTarget) -> Sequence[RecordCandidate]:
        self.fetched.append(target.key)
        result = self._results.get(target.key, ())
        if isinstance(result, BaseException):
            raise result
        return list(result)


def static_loader(targets: Sequence[CollectorTarget]):
    async def load(_session_factory) -> list[CollectorTarget]:
        return list(targets)

    return load


def make_definition(
    name: str = "sucupira",
    *,
    targets: Sequence[CollectorTarget] = (),
    source_factory: Callable[[], FakeSource] | None = None,
    load_targets=None,
    interval_minutes: int = 60,
    enrichment_allowed: bool = False,
) -> CollectorDefinition:
    return CollectorDefinition(
        name=name,
        source=name,
        interval_minutes=interval_minutes,
        load_targets=load_targets or static_loader(targets),
        source_factory=source_factory or (lambda: FakeSource({})),
        inter_target_delay_seconds=0,
        enrichment_allowed=enrichment_allowed,
        description=f"{name} test collector",
    )


def runner_settings(**overrides) -> RunnerSettings:
    values = {
        "fetch_timeout_seconds": 5.0,
        "progress_flush_interval": 1,
        "max_error_messages": 10,
    }
    values.update(overrides)
    return RunnerSettings(**values)
