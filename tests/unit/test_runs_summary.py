from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from profilehub.db.models import CollectorRun, CollectorRunStatus, RunTriggerType
from profilehub.services.domains.runs import application as run_service
from profilehub.services.domains.runs.types import RunProgress


def _run(**fields) -> CollectorRun:
    values = {
        "collector": "bdtd",
        "source": "bdtd",
        "trigger_type": RunTriggerType.SCHEDULED,
        "status": CollectorRunStatus.COMPLETED,
        "created_count": 0,
        "skipped_count": 0,
        "errored_count": 0,
        "targets_total": 0,
        "targets_processed": 0,
        "error_messages": [],
    }
    values.update(fields)
    return CollectorRun(**values)


def test_extract_run_summary_reports_counts_and_success() -> None:
    summary = run_service.extract_run_summary(
        _run(created_count=4, skipped_count=7, targets_total=3, targets_processed=3)
    )

    assert summary == {
        "created_count": 4,
        "skipped_count": 7,
        "errored_count": 0,
        "targets_total": 3,
        "targets_processed": 3,
        "success": True,
        "error_messages": [],
        "interrupted_reason": None,
    }


def test_extract_run_summary_marks_errors_and_failures_unsuccessful() -> None:
    with_errors = run_service.extract_run_summary(
        _run(errored_count=1, error_messages=["Target 2: HTTP 503"])
    )
    failed = run_service.extract_run_summary(_run(status=CollectorRunStatus.FAILED))
    cancelled = run_service.extract_run_summary(
        _run(status=CollectorRunStatus.CANCELLED, interrupted_reason="stopped")
    )

    assert with_errors["success"] is False
    assert with_errors["error_messages"] == ["Target 2: HTTP 503"]
    assert failed["success"] is False
    assert cancelled["success"] is True
    assert cancelled["interrupted_reason"] == "stopped"


def test_bounded_error_messages_keeps_most_recent() -> None:
    assert run_service.bounded_error_messages(["a", "b", "c"], limit=2) == ["b", "c"]
    assert run_service.bounded_error_messages(["a"], limit=0) == []


def test_ensure_utc_marks_naive_values() -> None:
    naive = datetime(2026, 10, 18, 8, 0)
    assert run_service.ensure_utc(naive) == datetime(2026, 10, 18, 8, 0, tzinfo=UTC)
    assert run_service.ensure_utc(None) is None


@pytest.mark.asyncio
async def test_finalize_run_is_applied_exactly_once(sqlite_session: AsyncSession) -> None:
    run = await run_service.create_run(
        sqlite_session,
        collector="bdtd",
        source="bdtd",
        trigger_type=RunTriggerType.MANUAL,
    )
    await run_service.mark_running(sqlite_session, run_id=run.id, targets_total=2)

    first = await run_service.finalize_run(
        sqlite_session,
        run_id=run.id,
        status=CollectorRunStatus.COMPLETED,
        progress=RunProgress(created_count=3, targets_total=2, targets_processed=2),
        max_error_messages=5,
    )
    second = await run_service.finalize_run(
        sqlite_session,
        run_id=run.id,
        status=CollectorRunStatus.FAILED,
        progress=RunProgress(errored_count=9),
        max_error_messages=5,
    )

    assert (first, second) == (True, False)
    await sqlite_session.refresh(run)
    assert run.status == CollectorRunStatus.COMPLETED
    assert run.created_count == 3
    assert run.errored_count == 0


@pytest.mark.asyncio
async def test_finalize_run_rejects_non_terminal_status(sqlite_session: AsyncSession) -> None:
    with pytest.raises(ValueError):
        await run_service.finalize_run(
            sqlite_session,
            run_id=1,
            status=CollectorRunStatus.RUNNING,
            progress=RunProgress(),
            max_error_messages=5,
        )


@pytest.mark.asyncio
async def test_record_progress_ignores_terminal_runs(sqlite_session: AsyncSession) -> None:
    run = await run_service.create_run(
        sqlite_session,
        collector="ufms",
        source="ufms",
        trigger_type=RunTriggerType.SCHEDULED,
    )
    await run_service.record_progress(
        sqlite_session,
        run_id=run.id,
        progress=RunProgress(created_count=1, targets_processed=1, error_messages=["x", "y", "z"]),
        max_error_messages=2,
    )
    await sqlite_session.refresh(run)
    assert run.created_count == 1
    assert run.error_messages == ["y", "z"]

    await run_service.finalize_run(
        sqlite_session,
        run_id=run.id,
        status=CollectorRunStatus.CANCELLED,
        progress=RunProgress(created_count=1, targets_processed=1, interrupted_reason="stopped"),
        max_error_messages=2,
    )
    await run_service.record_progress(
        sqlite_session,
        run_id=run.id,
        progress=RunProgress(created_count=50),
        max_error_messages=2,
    )
    await sqlite_session.refresh(run)
    assert run.created_count == 1
    assert run.status == CollectorRunStatus.CANCELLED


@pytest.mark.asyncio
async def test_fail_stale_runs_closes_active_runs_only(sqlite_session: AsyncSession) -> None:
    stale = await run_service.create_run(
        sqlite_session,
        collector="bdtd",
        source="bdtd",
        trigger_type=RunTriggerType.SCHEDULED,
    )
    stale.error_messages = ["Target 1: HTTP 500", "Target 2: HTTP 500", "Target 3: HTTP 500"]
    sqlite_session.add(_run(collector="ufms", source="ufms"))
    await sqlite_session.commit()

    failed = await run_service.fail_stale_runs(sqlite_session, max_error_messages=2)

    assert failed == 1
    await sqlite_session.refresh(stale)
    assert stale.status == CollectorRunStatus.FAILED
    assert stale.interrupted_reason == "process_restart"
    assert stale.error_messages == ["Target 3: HTTP 500", "Run interrupted by a process restart."]
    assert stale.finished_at is not None
    assert await run_service.get_active_run(sqlite_session, collector="bdtd") is None


@pytest.mark.asyncio
async def test_last_started_at_and_list_runs(sqlite_session: AsyncSession) -> None:
    older = datetime(2026, 10, 17, 8, 0, tzinfo=UTC)
    sqlite_session.add_all(
        [
            _run(started_at=older),
            _run(started_at=older + timedelta(hours=6)),
            _run(collector="ufms", source="ufms", started_at=older + timedelta(hours=1)),
        ]
    )
    await sqlite_session.commit()

    assert await run_service.last_started_at(sqlite_session, collector="bdtd") == older + timedelta(hours=6)
    assert await run_service.last_started_at(sqlite_session, collector="sucupira") is None
    runs = await run_service.list_runs(sqlite_session, collector="bdtd", limit=10)
    assert [run_service.ensure_utc(run.started_at) for run in runs] == [
        older + timedelta(hours=6),
        older,
    ]
    assert len(await run_service.list_runs(sqlite_session, limit=2)) == 2
