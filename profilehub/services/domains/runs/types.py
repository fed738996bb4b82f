from __future__ import annotations

from dataclasses import dataclass, field

from profilehub.db.models import CollectorRunStatus


@dataclass
class RunProgress:
    created_count: int = 0
    skipped_count: int = 0
    errored_count: int = 0
    targets_total: int = 0
    targets_processed: int = 0
    error_messages: list[str] = field(default_factory=list)
    interrupted_reason: str | None = None


@dataclass(frozen=True)
class RunExecutionSummary:
    run_id: int
    collector: str
    status: CollectorRunStatus
    created_count: int
    skipped_count: int
    errored_count: int
    targets_total: int
    targets_processed: int
    error_messages: tuple[str, ...] = ()
    interrupted_reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status != CollectorRunStatus.FAILED and self.errored_count == 0
