from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.db.models import CollectorRun, CollectorRunStatus, CollectorStatus, RunTriggerType
from profilehub.services.domains.activity.application import ActivityLog
from profilehub.services.domains.collectors.errors import (
    CollectorNotRunningError,
    RunAlreadyInProgressError,
    UnknownCollectorError,
)
from profilehub.services.domains.collectors.registry import CollectorRegistry
from profilehub.services.domains.collectors.runner import CollectorRunService
from profilehub.services.domains.control.application import InMemoryControlStateStore
from profilehub.services.domains.runs import application as run_service
from profilehub.services.domains.runs.types import RunExecutionSummary
from profilehub.services.domains.scheduling.scheduler import SchedulerService, is_collector_due
from tests.unit.helpers import FakeSource, make_definition, make_targets, researcher_record, runner_settings


class _BlockingSource(FakeSource):
    def __init__(self) -> None:
        super().__init__({})
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch(self, target):
        self.fetched.append(target.key)
        self.started.set()
        await self.release.wait()
        return [researcher_record(target.label)]


class _RecordingRunService:
    """Stands in for CollectorRunService where only dispatch matters."""

    def __init__(self, *, failures_before_success: int = 0) -> None:
        self._failures_left = failures_before_success
        self.initialized: list[tuple[str, RunTriggerType]] = []
        self.attempts = 0

    async def initialize_run(self, definition, *, trigger_type: RunTriggerType) -> int:
        self.attempts += 1
        if self._failures_left > 0:
            self._failures_left -= 1
            raise OperationalError("INSERT INTO collector_runs", {}, ConnectionError("db down"))
        self.initialized.append((definition.name, trigger_type))
        return len(self.initialized)

    async def execute_run(self, definition, *, run_id: int, cancel_token=None) -> RunExecutionSummary:
        return RunExecutionSummary(
            run_id=run_id,
            collector=definition.name,
            status=CollectorRunStatus.COMPLETED,
            created_count=0,
            skipped_count=0,
            errored_count=0,
            targets_total=0,
            targets_processed=0,
        )


def _scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    registry: CollectorRegistry,
    *,
    control_store: InMemoryControlStateStore | None = None,
    collector_runs=None,
    dispatch_attempts: int = 3,
) -> SchedulerService:
    control_store = control_store or InMemoryControlStateStore()
    return SchedulerService(
        registry=registry,
        run_service=collector_runs
        or CollectorRunService(
            session_factory=session_factory,
            control_store=control_store,
            activity_log=ActivityLog(),
            runner_settings=runner_settings(),
        ),
        control_store=control_store,
        session_factory=session_factory,
        enabled=False,
        tick_seconds=60,
        dispatch_attempts=dispatch_attempts,
        dispatch_backoff_seconds=0,
        dispatch_max_backoff_seconds=0,
        shutdown_grace_seconds=0.1,
    )


def test_is_collector_due() -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    assert is_collector_due(last_started_at=None, interval_minutes=60, now=now)
    assert is_collector_due(last_started_at=now - timedelta(minutes=60), interval_minutes=60, now=now)
    assert not is_collector_due(last_started_at=now - timedelta(minutes=59), interval_minutes=60, now=now)


@pytest.mark.asyncio
async def test_trigger_now_runs_collector_and_clears_in_flight(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    source = FakeSource({"target:1": [researcher_record("Ana Costa")]})
    definition = make_definition("bdtd", targets=make_targets(1), source_factory=lambda: source)
    scheduler = _scheduler(session_factory, CollectorRegistry([definition]))

    run_id = await scheduler.trigger_now("bdtd")
    assert scheduler.in_flight_run_id("bdtd") == run_id
    summary = await scheduler.wait_for_run("bdtd")

    assert summary is not None
    assert summary.run_id == run_id
    assert summary.created_count == 1
    assert scheduler.in_flight_runs() == {}
    async with session_factory() as db_session:
        run = await run_service.get_run(db_session, run_id=run_id)
    assert run.trigger_type == RunTriggerType.MANUAL
    assert run.status == CollectorRunStatus.COMPLETED


@pytest.mark.asyncio
async def test_trigger_now_rejects_overlapping_runs(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    source = _BlockingSource()
    definition = make_definition("bdtd", targets=make_targets(1), source_factory=lambda: source)
    scheduler = _scheduler(session_factory, CollectorRegistry([definition]))

    run_id = await scheduler.trigger_now("bdtd")
    await asyncio.wait_for(source.started.wait(), timeout=5)
    with pytest.raises(RunAlreadyInProgressError):
        await scheduler.trigger_now("bdtd")

    source.release.set()
    summary = await scheduler.wait_for_run("bdtd")
    assert summary.run_id == run_id
    assert summary.status == CollectorRunStatus.COMPLETED


@pytest.mark.asyncio
async def test_trigger_now_requires_known_running_collector(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    control_store = InMemoryControlStateStore({"bdtd": CollectorStatus.PAUSED})
    scheduler = _scheduler(
        session_factory,
        CollectorRegistry([make_definition("bdtd")]),
        control_store=control_store,
    )

    with pytest.raises(CollectorNotRunningError) as exc_info:
        await scheduler.trigger_now("bdtd")
    assert exc_info.value.status == "paused"
    with pytest.raises(UnknownCollectorError):
        await scheduler.trigger_now("lattes")


@pytest.mark.asyncio
async def test_dispatch_retries_transient_database_errors(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    collector_runs = _RecordingRunService(failures_before_success=2)
    scheduler = _scheduler(
        session_factory,
        CollectorRegistry([make_definition("bdtd")]),
        collector_runs=collector_runs,
    )

    run_id = await scheduler.trigger_now("bdtd")
    await scheduler.wait_for_run("bdtd")

    assert run_id == 1
    assert collector_runs.attempts == 3


@pytest.mark.asyncio
async def test_dispatch_gives_up_after_configured_attempts(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    collector_runs = _RecordingRunService(failures_before_success=5)
    scheduler = _scheduler(
        session_factory,
        CollectorRegistry([make_definition("bdtd")]),
        collector_runs=collector_runs,
        dispatch_attempts=2,
    )

    with pytest.raises(OperationalError):
        await scheduler.trigger_now("bdtd")
    assert collector_runs.attempts == 2
    assert scheduler.in_flight_runs() == {}


@pytest.mark.asyncio
async def test_tick_dispatches_only_due_running_collectors(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    async with session_factory() as db_session:
        db_session.add(
            CollectorRun(
                collector="ufms",
                source="ufms",
                trigger_type=RunTriggerType.SCHEDULED,
                status=CollectorRunStatus.COMPLETED,
                started_at=datetime.now(UTC) - timedelta(minutes=5),
                error_messages=[],
            )
        )
        await db_session.commit()

    collector_runs = _RecordingRunService()
    control_store = InMemoryControlStateStore({"bdtd": CollectorStatus.STOPPED})
    scheduler = _scheduler(
        session_factory,
        CollectorRegistry(
            [
                make_definition("bdtd"),
                make_definition("ufms", interval_minutes=60),
                make_definition("sucupira"),
            ]
        ),
        control_store=control_store,
        collector_runs=collector_runs,
    )

    await scheduler._tick_once()
    await scheduler.wait_for_run("sucupira")

    assert collector_runs.initialized == [("sucupira", RunTriggerType.SCHEDULED)]


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_runs(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    source = _BlockingSource()
    definition = make_definition("bdtd", targets=make_targets(2), source_factory=lambda: source)
    scheduler = _scheduler(session_factory, CollectorRegistry([definition]))

    run_id = await scheduler.trigger_now("bdtd")
    await asyncio.wait_for(source.started.wait(), timeout=5)
    await scheduler.stop()

    assert scheduler.in_flight_runs() == {}
    assert source.exited is True
    async with session_factory() as db_session:
        run = await run_service.get_run(db_session, run_id=run_id)
    assert run.status == CollectorRunStatus.CANCELLED
    assert run.interrupted_reason == "shutdown"


@pytest.mark.asyncio
async def test_cancel_run_requests_cooperative_stop(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    source = _BlockingSource()
    definition = make_definition("bdtd", targets=make_targets(3), source_factory=lambda: source)
    scheduler = _scheduler(session_factory, CollectorRegistry([definition]))

    run_id = await scheduler.trigger_now("bdtd")
    await asyncio.wait_for(source.started.wait(), timeout=5)

    assert scheduler.cancel_run(run_id) is True
    assert scheduler.cancel_run(run_id + 100) is False
    source.release.set()
    summary = await scheduler.wait_for_run("bdtd")

    assert summary.status == CollectorRunStatus.CANCELLED
    assert summary.interrupted_reason == "cancelled"
    assert source.fetched == ["target:1"]
