from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.services.domains.merge.types import MergeOutcome, RecordCandidate
from profilehub.services.domains.runs.types import RunProgress


@dataclass(frozen=True)
class CollectorTarget:
    key: str
    label: str
    params: dict[str, Any] = field(default_factory=dict)


FetchFunction = Callable[[CollectorTarget], Awaitable[Sequence[RecordCandidate]]]
MergeFunction = Callable[[RecordCandidate], Awaitable[MergeOutcome]]
CheckpointFunction = Callable[[], Awaitable[None]]
ProgressCallback = Callable[[RunProgress], Awaitable[None]]
TargetLoader = Callable[[async_sessionmaker[AsyncSession]], Awaitable[list[CollectorTarget]]]


class CandidateSource(Protocol):
    async def __aenter__(self) -> CandidateSource: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None: ...

    async def fetch(self, target: CollectorTarget) -> Sequence[RecordCandidate]: ...


@dataclass(frozen=True)
class CollectorDefinition:
    name: str
    source: str
    interval_minutes: int
    load_targets: TargetLoader
    source_factory: Callable[[], CandidateSource]
    inter_target_delay_seconds: float
    enrichment_allowed: bool = False
    description: str = ""


class CancellationToken:
    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        # First request wins.
        if self._reason is None:
            self._reason = reason
