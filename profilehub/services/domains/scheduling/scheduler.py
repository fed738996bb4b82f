from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from profilehub.db.models import CollectorStatus, RunTriggerType
from profilehub.logging_utils import structured_log
from profilehub.services.domains.collectors.errors import (
    CollectorNotRunningError,
    RunAlreadyInProgressError,
)
from profilehub.services.domains.collectors.registry import CollectorRegistry
from profilehub.services.domains.collectors.runner import CollectorRunService
from profilehub.services.domains.collectors.types import CancellationToken, CollectorDefinition
from profilehub.services.domains.control.application import ControlStateStore
from profilehub.services.domains.runs import application as run_service
from profilehub.services.domains.runs.types import RunExecutionSummary

logger = logging.getLogger(__name__)

TRANSIENT_DISPATCH_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


def is_collector_due(
    *,
    last_started_at: datetime | None,
    interval_minutes: int,
    now: datetime,
) -> bool:
    if last_started_at is None:
        return True
    return now >= last_started_at + timedelta(minutes=max(1, int(interval_minutes)))


@dataclass
class _InFlightRun:
    run_id: int
    token: CancellationToken
    task: asyncio.Task[RunExecutionSummary | None]


class SchedulerService:
    def __init__(
        self,
        *,
        registry: CollectorRegistry,
        run_service: CollectorRunService,
        control_store: ControlStateStore,
        session_factory: async_sessionmaker[AsyncSession],
        enabled: bool,
        tick_seconds: int,
        dispatch_attempts: int,
        dispatch_backoff_seconds: float,
        dispatch_max_backoff_seconds: float,
        shutdown_grace_seconds: float,
    ) -> None:
        self._registry = registry
        self._run_service = run_service
        self._control_store = control_store
        self._session_factory = session_factory
        self._enabled = enabled
        self._tick_seconds = max(1, int(tick_seconds))
        self._dispatch_attempts = max(1, int(dispatch_attempts))
        self._dispatch_backoff_seconds = max(0.0, float(dispatch_backoff_seconds))
        self._dispatch_max_backoff_seconds = max(
            self._dispatch_backoff_seconds,
            float(dispatch_max_backoff_seconds),
        )
        self._shutdown_grace_seconds = max(0.0, float(shutdown_grace_seconds))
        self._task: asyncio.Task[None] | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, _InFlightRun] = {}

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    async def start(self) -> None:
        if not self._enabled:
            logger.info("scheduler.disabled", extra={"event": "scheduler.disabled"})
            return
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="profilehub-scheduler")
        logger.info(
            "scheduler.started",
            extra={
                "event": "scheduler.started",
                "tick_seconds": self._tick_seconds,
                "collectors": self._registry.names(),
                "dispatch_attempts": self._dispatch_attempts,
            },
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None

        in_flight = list(self._in_flight.values())
        for entry in in_flight:
            entry.token.cancel("shutdown")
        tasks = [entry.task for entry in in_flight]
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=self._shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            "scheduler.stopped",
            extra={"event": "scheduler.stopped", "runs_interrupted": len(tasks)},
        )

    async def _run_loop(self) -> None:
        while True:
            try:
                await self._tick_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduler.tick_failed", extra={"event": "scheduler.tick_failed"})
            await asyncio.sleep(float(self._tick_seconds))

    async def _tick_once(self) -> None:
        now = datetime.now(UTC)
        for definition in self._registry:
            if definition.name in self._in_flight:
                continue
            if not await self._control_store.should_run(definition.name):
                continue
            if not await self._is_due(definition, now=now):
                continue
            try:
                await self._dispatch(definition, trigger_type=RunTriggerType.SCHEDULED)
            except RunAlreadyInProgressError:
                logger.info(
                    "scheduler.run_skipped_locked",
                    extra={"event": "scheduler.run_skipped_locked", "collector": definition.name},
                )
            except Exception:
                logger.exception(
                    "scheduler.dispatch_failed",
                    extra={"event": "scheduler.dispatch_failed", "collector": definition.name},
                )

    async def _is_due(self, definition: CollectorDefinition, *, now: datetime) -> bool:
        async with self._session_factory() as db_session:
            last_started = await run_service.last_started_at(
                db_session,
                collector=definition.name,
            )
        return is_collector_due(
            last_started_at=last_started,
            interval_minutes=definition.interval_minutes,
            now=now,
        )

    async def trigger_now(self, name: str) -> int:
        definition = self._registry.get(name)
        status = await self._control_store.get_status(name)
        if status != CollectorStatus.RUNNING:
            raise CollectorNotRunningError(name, status.value)
        return await self._dispatch(definition, trigger_type=RunTriggerType.MANUAL)

    async def _initialize_with_retry(
        self,
        definition: CollectorDefinition,
        *,
        trigger_type: RunTriggerType,
    ) -> int:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_DISPATCH_ERRORS),
            stop=stop_after_attempt(self._dispatch_attempts),
            wait=wait_exponential(
                multiplier=self._dispatch_backoff_seconds,
                max=self._dispatch_max_backoff_seconds,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._run_service.initialize_run(definition, trigger_type=trigger_type)
        raise RuntimeError("Dispatch was not attempted.")

    async def _dispatch(
        self,
        definition: CollectorDefinition,
        *,
        trigger_type: RunTriggerType,
    ) -> int:
        lock = self._locks.setdefault(definition.name, asyncio.Lock())
        async with lock:
            if definition.name in self._in_flight:
                raise RunAlreadyInProgressError(definition.name)
            run_id = await self._initialize_with_retry(definition, trigger_type=trigger_type)
            token = CancellationToken()
            task = asyncio.create_task(
                self._run(definition, run_id=run_id, token=token),
                name=f"profilehub-collector-{definition.name}-{run_id}",
            )
            self._in_flight[definition.name] = _InFlightRun(run_id=run_id, token=token, task=task)
        structured_log(
            logger,
            "info",
            "scheduler.run_dispatched",
            collector=definition.name,
            run_id=run_id,
            trigger_type=trigger_type.value,
        )
        return run_id

    async def _run(
        self,
        definition: CollectorDefinition,
        *,
        run_id: int,
        token: CancellationToken,
    ) -> RunExecutionSummary | None:
        try:
            return await self._run_service.execute_run(
                definition,
                run_id=run_id,
                cancel_token=token,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            # Run-internal failures are surfaced on the run record, never retried.
            logger.exception(
                "scheduler.run_failed",
                extra={"event": "scheduler.run_failed", "collector": definition.name, "run_id": run_id},
            )
            return None
        finally:
            current = self._in_flight.get(definition.name)
            if current is not None and current.run_id == run_id:
                self._in_flight.pop(definition.name, None)

    def in_flight_runs(self) -> dict[str, int]:
        return {name: entry.run_id for name, entry in self._in_flight.items()}

    def in_flight_run_id(self, name: str) -> int | None:
        entry = self._in_flight.get(name)
        return entry.run_id if entry is not None else None

    def cancel(self, name: str, *, reason: str = "cancelled") -> bool:
        entry = self._in_flight.get(name)
        if entry is None:
            return False
        entry.token.cancel(reason)
        structured_log(logger, "info", "scheduler.cancel_requested", collector=name, run_id=entry.run_id)
        return True

    def cancel_run(self, run_id: int, *, reason: str = "cancelled") -> bool:
        for name, entry in self._in_flight.items():
            if entry.run_id == run_id:
                return self.cancel(name, reason=reason)
        return False

    async def wait_for_run(self, name: str) -> RunExecutionSummary | None:
        entry = self._in_flight.get(name)
        if entry is None:
            return None
        return await asyncio.shield(entry.task)
