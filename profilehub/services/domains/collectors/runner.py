from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from dataclasses import dataclass
from functools import partial
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.db.models import CollectorRunStatus, CollectorStatus, RunTriggerType
from profilehub.logging_context import bind_collector_context
from profilehub.logging_utils import structured_log
from profilehub.services.domains.activity.application import ActivityLevel, ActivityLog
from profilehub.services.domains.collectors.errors import ControlInterrupt, SetupFailure
from profilehub.services.domains.collectors.executor import RunExecutor
from profilehub.services.domains.collectors.types import (
    CancellationToken,
    CollectorDefinition,
    CollectorTarget,
)
from profilehub.services.domains.control.application import ControlStateStore
from profilehub.services.domains.merge.application import apply_candidate
from profilehub.services.domains.runs import application as run_service
from profilehub.services.domains.runs.types import RunExecutionSummary, RunProgress

logger = logging.getLogger(__name__)

SHUTDOWN_INTERRUPTED_REASON = "shutdown"


@dataclass(frozen=True)
class RunnerSettings:
    fetch_timeout_seconds: float
    progress_flush_interval: int
    max_error_messages: int


class CollectorRunService:
    """Wraps ``RunExecutor`` in the CollectorRun lifecycle.

    created -> running -> completed | cancelled | failed, finalized exactly once.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        control_store: ControlStateStore,
        activity_log: ActivityLog,
        runner_settings: RunnerSettings,
        sleep=asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._control_store = control_store
        self._activity_log = activity_log
        self._settings = runner_settings
        self._sleep = sleep

    async def initialize_run(
        self,
        definition: CollectorDefinition,
        *,
        trigger_type: RunTriggerType,
    ) -> int:
        async with self._session_factory() as db_session:
            run = await run_service.create_run(
                db_session,
                collector=definition.name,
                source=definition.source,
                trigger_type=trigger_type,
            )
            return int(run.id)

    def _checkpoint(self, definition: CollectorDefinition, cancel_token: CancellationToken):
        async def checkpoint() -> None:
            if cancel_token.is_cancelled:
                raise ControlInterrupt(cancel_token.reason or "cancelled")
            try:
                status = await self._control_store.get_status(definition.name)
            except SQLAlchemyError as exc:
                # An unreadable control state never stops a run; the next checkpoint reads it again.
                structured_log(logger, "warning", "collector.control_read_failed", detail=str(exc))
                return
            if status != CollectorStatus.RUNNING:
                raise ControlInterrupt(status.value)

        return checkpoint

    async def _load_targets(self, definition: CollectorDefinition) -> list[CollectorTarget]:
        try:
            return list(await definition.load_targets(self._session_factory))
        except SetupFailure:
            raise
        except Exception as exc:
            raise SetupFailure(f"Could not load targets: {exc}") from exc

    async def _flush_progress(self, run_id: int, progress: RunProgress) -> None:
        try:
            async with self._session_factory() as db_session:
                await run_service.record_progress(
                    db_session,
                    run_id=run_id,
                    progress=progress,
                    max_error_messages=self._settings.max_error_messages,
                )
        except SQLAlchemyError as exc:
            # Finalization writes the same counters, so a missed flush only delays them.
            structured_log(
                logger,
                "warning",
                "collector.progress_flush_failed",
                targets_processed=progress.targets_processed,
                detail=str(exc),
            )

    async def _execute(
        self,
        definition: CollectorDefinition,
        *,
        run_id: int,
        cancel_token: CancellationToken,
        progress: RunProgress,
    ) -> None:
        targets = await self._load_targets(definition)
        progress.targets_total = len(targets)
        async with AsyncExitStack() as stack:
            try:
                source = await stack.enter_async_context(definition.source_factory())
            except SetupFailure:
                raise
            except Exception as exc:
                raise SetupFailure(f"Could not open candidate source: {exc}") from exc

            async with self._session_factory() as db_session:
                await run_service.mark_running(
                    db_session,
                    run_id=run_id,
                    targets_total=len(targets),
                )
            self._activity_log.append(
                definition.name,
                ActivityLevel.INFO,
                f"Run #{run_id} started with {len(targets)} target(s)",
            )
            executor = RunExecutor(
                collector=definition.name,
                inter_target_delay_seconds=definition.inter_target_delay_seconds,
                fetch_timeout_seconds=self._settings.fetch_timeout_seconds,
                progress_interval=self._settings.progress_flush_interval,
                max_error_messages=self._settings.max_error_messages,
                activity_log=self._activity_log,
                sleep=self._sleep,
            )
            await executor.execute(
                targets=targets,
                fetch=source.fetch,
                merge=partial(
                    apply_candidate,
                    self._session_factory,
                    enrichment_allowed=definition.enrichment_allowed,
                ),
                checkpoint=self._checkpoint(definition, cancel_token),
                on_progress=partial(self._flush_progress, run_id),
                progress=progress,
            )

    async def _finalize(
        self,
        *,
        run_id: int,
        status: CollectorRunStatus,
        progress: RunProgress,
    ) -> None:
        async with self._session_factory() as db_session:
            await run_service.finalize_run(
                db_session,
                run_id=run_id,
                status=status,
                progress=progress,
                max_error_messages=self._settings.max_error_messages,
            )

    async def execute_run(
        self,
        definition: CollectorDefinition,
        *,
        run_id: int,
        cancel_token: CancellationToken | None = None,
    ) -> RunExecutionSummary:
        bind_collector_context(collector=definition.name, run_id=run_id)
        cancel_token = cancel_token or CancellationToken()
        progress = RunProgress()
        structured_log(logger, "info", "collector.run_started", source=definition.source)

        try:
            await self._execute(
                definition,
                run_id=run_id,
                cancel_token=cancel_token,
                progress=progress,
            )
            status = (
                CollectorRunStatus.CANCELLED
                if progress.interrupted_reason is not None
                else CollectorRunStatus.COMPLETED
            )
        except SetupFailure as exc:
            status = CollectorRunStatus.FAILED
            progress.error_messages.append(str(exc))
            self._activity_log.append(definition.name, ActivityLevel.ERROR, f"Run #{run_id} failed: {exc}")
            structured_log(logger, "error", "collector.run_setup_failed", detail=str(exc))
        except asyncio.CancelledError:
            progress.interrupted_reason = SHUTDOWN_INTERRUPTED_REASON
            await self._finalize(run_id=run_id, status=CollectorRunStatus.CANCELLED, progress=progress)
            self._activity_log.append(
                definition.name,
                ActivityLevel.WARNING,
                f"Run #{run_id} cancelled by shutdown",
            )
            raise
        except Exception as exc:
            status = CollectorRunStatus.FAILED
            progress.error_messages.append(f"Unexpected failure: {exc.__class__.__name__}: {exc}")
            self._activity_log.append(definition.name, ActivityLevel.ERROR, f"Run #{run_id} failed unexpectedly: {exc}")
            logger.exception("collector.run_crashed", extra={"event": "collector.run_crashed"})

        await self._finalize(run_id=run_id, status=status, progress=progress)
        summary = RunExecutionSummary(
            run_id=run_id,
            collector=definition.name,
            status=status,
            created_count=progress.created_count,
            skipped_count=progress.skipped_count,
            errored_count=progress.errored_count,
            targets_total=progress.targets_total,
            targets_processed=progress.targets_processed,
            error_messages=tuple(progress.error_messages),
            interrupted_reason=progress.interrupted_reason,
        )
        if status == CollectorRunStatus.COMPLETED:
            level = ActivityLevel.SUCCESS if summary.success else ActivityLevel.WARNING
            self._activity_log.append(
                definition.name,
                level,
                f"Run #{run_id} finished: {summary.created_count} created, "
                f"{summary.skipped_count} skipped, {summary.errored_count} error(s)",
            )
        structured_log(
            logger,
            "info",
            "collector.run_finished",
            status=status.value,
            created_count=summary.created_count,
            skipped_count=summary.skipped_count,
            errored_count=summary.errored_count,
            success=summary.success,
        )
        return summary
