from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from profilehub.db.models import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    CollectorRun,
    CollectorRunStatus,
    RunTriggerType,
)
from profilehub.logging_utils import structured_log
from profilehub.services.domains.collectors.errors import RunAlreadyInProgressError
from profilehub.services.domains.runs.types import RunProgress

logger = logging.getLogger(__name__)

ACTIVE_RUN_INDEX_NAME = "uq_collector_runs_collector_active"
RESTART_INTERRUPTED_REASON = "process_restart"


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _is_active_run_integrity_error(exc: IntegrityError) -> bool:
    original_error = getattr(exc, "orig", None)
    if ACTIVE_RUN_INDEX_NAME in str(exc):
        return True
    if original_error is None:
        return False
    if ACTIVE_RUN_INDEX_NAME in str(original_error):
        return True
    diagnostics = getattr(original_error, "diag", None)
    if diagnostics is None:
        return False
    return getattr(diagnostics, "constraint_name", None) == ACTIVE_RUN_INDEX_NAME


def bounded_error_messages(messages: list[str], *, limit: int) -> list[str]:
    if limit <= 0:
        return []
    return list(messages[-limit:])


async def get_active_run(
    db_session: AsyncSession,
    *,
    collector: str,
) -> CollectorRun | None:
    result = await db_session.execute(
        select(CollectorRun)
        .where(
            CollectorRun.collector == collector,
            CollectorRun.status.in_(ACTIVE_RUN_STATUSES),
        )
        .order_by(CollectorRun.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_run(
    db_session: AsyncSession,
    *,
    collector: str,
    source: str,
    trigger_type: RunTriggerType,
) -> CollectorRun:
    now = datetime.now(UTC)
    run = CollectorRun(
        collector=collector,
        source=source,
        trigger_type=trigger_type,
        status=CollectorRunStatus.CREATED,
        error_messages=[],
        started_at=now,
        last_activity_at=now,
    )
    db_session.add(run)
    try:
        await db_session.commit()
    except IntegrityError as exc:
        await db_session.rollback()
        if _is_active_run_integrity_error(exc):
            raise RunAlreadyInProgressError(collector) from exc
        # SQLite reports the indexed column instead of the index name.
        if await get_active_run(db_session, collector=collector) is not None:
            raise RunAlreadyInProgressError(collector) from exc
        raise
    await db_session.refresh(run)
    structured_log(
        logger,
        "info",
        "runs.created",
        collector=collector,
        run_id=run.id,
        trigger_type=trigger_type.value,
    )
    return run


async def get_run(db_session: AsyncSession, *, run_id: int) -> CollectorRun | None:
    result = await db_session.execute(select(CollectorRun).where(CollectorRun.id == run_id))
    return result.scalar_one_or_none()


async def list_runs(
    db_session: AsyncSession,
    *,
    collector: str | None = None,
    limit: int = 100,
) -> list[CollectorRun]:
    stmt = (
        select(CollectorRun)
        .order_by(CollectorRun.started_at.desc(), CollectorRun.id.desc())
        .limit(limit)
    )
    if collector is not None:
        stmt = stmt.where(CollectorRun.collector == collector)
    result = await db_session.execute(stmt)
    return list(result.scalars().all())


async def last_started_at(db_session: AsyncSession, *, collector: str) -> datetime | None:
    result = await db_session.execute(
        select(CollectorRun.started_at)
        .where(CollectorRun.collector == collector)
        .order_by(CollectorRun.started_at.desc(), CollectorRun.id.desc())
        .limit(1)
    )
    return ensure_utc(result.scalar_one_or_none())


async def mark_running(
    db_session: AsyncSession,
    *,
    run_id: int,
    targets_total: int,
) -> None:
    run = await get_run(db_session, run_id=run_id)
    if run is None or run.status in TERMINAL_RUN_STATUSES:
        return
    run.status = CollectorRunStatus.RUNNING
    run.targets_total = int(targets_total)
    run.last_activity_at = datetime.now(UTC)
    await db_session.commit()


def _apply_progress(run: CollectorRun, progress: RunProgress, *, max_error_messages: int) -> None:
    run.created_count = progress.created_count
    run.skipped_count = progress.skipped_count
    run.errored_count = progress.errored_count
    run.targets_processed = progress.targets_processed
    run.error_messages = bounded_error_messages(progress.error_messages, limit=max_error_messages)
    run.last_activity_at = datetime.now(UTC)


async def record_progress(
    db_session: AsyncSession,
    *,
    run_id: int,
    progress: RunProgress,
    max_error_messages: int,
) -> None:
    run = await get_run(db_session, run_id=run_id)
    if run is None or run.status in TERMINAL_RUN_STATUSES:
        return
    _apply_progress(run, progress, max_error_messages=max_error_messages)
    await db_session.commit()


async def finalize_run(
    db_session: AsyncSession,
    *,
    run_id: int,
    status: CollectorRunStatus,
    progress: RunProgress,
    max_error_messages: int,
) -> bool:
    """Move a run to its terminal status. Returns False when it already was terminal."""
    if status not in TERMINAL_RUN_STATUSES:
        raise ValueError(f"Run status '{status}' is not terminal.")
    run = await get_run(db_session, run_id=run_id)
    if run is None or run.status in TERMINAL_RUN_STATUSES:
        return False
    _apply_progress(run, progress, max_error_messages=max_error_messages)
    run.status = status
    run.interrupted_reason = progress.interrupted_reason
    run.finished_at = datetime.now(UTC)
    await db_session.commit()
    structured_log(
        logger,
        "info",
        "runs.finalized",
        collector=run.collector,
        run_id=run.id,
        status=status.value,
        created_count=run.created_count,
        skipped_count=run.skipped_count,
        errored_count=run.errored_count,
    )
    return True


async def cancel_orphaned_run(db_session: AsyncSession, *, run: CollectorRun) -> bool:
    """Finalize an active run that has no live task behind it."""
    progress = RunProgress(
        created_count=run.created_count,
        skipped_count=run.skipped_count,
        errored_count=run.errored_count,
        targets_processed=run.targets_processed,
        error_messages=list(run.error_messages or []),
        interrupted_reason="cancelled",
    )
    return await finalize_run(
        db_session,
        run_id=run.id,
        status=CollectorRunStatus.CANCELLED,
        progress=progress,
        max_error_messages=len(progress.error_messages),
    )


async def fail_stale_runs(db_session: AsyncSession, *, max_error_messages: int) -> int:
    result = await db_session.execute(
        select(CollectorRun).where(CollectorRun.status.in_(ACTIVE_RUN_STATUSES))
    )
    stale_runs = list(result.scalars().all())
    now = datetime.now(UTC)
    for run in stale_runs:
        run.status = CollectorRunStatus.FAILED
        run.interrupted_reason = RESTART_INTERRUPTED_REASON
        run.error_messages = bounded_error_messages(
            [*(run.error_messages or []), "Run interrupted by a process restart."],
            limit=max_error_messages,
        )
        run.finished_at = now
    if stale_runs:
        await db_session.commit()
        structured_log(
            logger,
            "warning",
            "runs.stale_runs_failed",
            count=len(stale_runs),
            run_ids=[run.id for run in stale_runs],
        )
    return len(stale_runs)


def extract_run_summary(run: CollectorRun) -> dict[str, Any]:
    errored_count = int(run.errored_count or 0)
    return {
        "created_count": int(run.created_count or 0),
        "skipped_count": int(run.skipped_count or 0),
        "errored_count": errored_count,
        "targets_total": int(run.targets_total or 0),
        "targets_processed": int(run.targets_processed or 0),
        "success": run.status != CollectorRunStatus.FAILED
        and errored_count == 0,
        "error_messages": [str(message) for message in (run.error_messages or [])],
        "interrupted_reason": run.interrupted_reason,
    }
