from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging

from fastapi import FastAPI, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.api.errors import register_api_exception_handlers
from profilehub.api.router import router as api_router
from profilehub.db.session import check_database, close_engine, get_session_factory
from profilehub.http.middleware import RequestLoggingMiddleware
from profilehub.logging_config import configure_logging, parse_redact_fields
from profilehub.logging_utils import structured_log
from profilehub.services.domains.activity.application import ActivityLog
from profilehub.services.domains.activity.events import ActivityBroadcaster
from profilehub.services.domains.collectors.registry import (
    CollectorRegistry,
    build_default_registry,
)
from profilehub.services.domains.collectors.runner import CollectorRunService, RunnerSettings
from profilehub.services.domains.control.application import (
    ControlStateStore,
    SqlControlStateStore,
)
from profilehub.services.domains.runs import application as run_service
from profilehub.services.domains.scheduling.scheduler import SchedulerService
from profilehub.settings import Settings, parse_csv_list, settings

logger = logging.getLogger(__name__)

configure_logging(
    level=settings.log_level,
    log_format=settings.log_format,
    redact_fields=parse_redact_fields(settings.log_redact_fields),
    include_uvicorn_access=settings.log_uvicorn_access,
)


@dataclass(frozen=True)
class AppServices:
    session_factory: async_sessionmaker[AsyncSession]
    registry: CollectorRegistry
    control_store: ControlStateStore
    activity_log: ActivityLog
    scheduler: SchedulerService


def build_services(
    app_settings: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: CollectorRegistry | None = None,
    control_store: ControlStateStore | None = None,
) -> AppServices:
    registry = registry or build_default_registry(app_settings)
    control_store = control_store or SqlControlStateStore(session_factory)
    activity_log = ActivityLog(
        max_entries=app_settings.activity_log_max_entries,
        broadcaster=ActivityBroadcaster(queue_size=app_settings.activity_log_subscriber_queue_size),
    )
    collector_runs = CollectorRunService(
        session_factory=session_factory,
        control_store=control_store,
        activity_log=activity_log,
        runner_settings=RunnerSettings(
            fetch_timeout_seconds=app_settings.collector_fetch_timeout_seconds,
            progress_flush_interval=app_settings.collector_progress_flush_interval,
            max_error_messages=app_settings.collector_max_error_messages,
        ),
    )
    scheduler = SchedulerService(
        registry=registry,
        run_service=collector_runs,
        control_store=control_store,
        session_factory=session_factory,
        enabled=app_settings.scheduler_enabled,
        tick_seconds=app_settings.scheduler_tick_seconds,
        dispatch_attempts=app_settings.scheduler_dispatch_attempts,
        dispatch_backoff_seconds=app_settings.scheduler_dispatch_backoff_seconds,
        dispatch_max_backoff_seconds=app_settings.scheduler_dispatch_max_backoff_seconds,
        shutdown_grace_seconds=app_settings.scheduler_shutdown_grace_seconds,
    )
    return AppServices(
        session_factory=session_factory,
        registry=registry,
        control_store=control_store,
        activity_log=activity_log,
        scheduler=scheduler,
    )


async def recover_stale_runs(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    max_error_messages: int,
) -> int:
    async with session_factory() as db_session:
        return await run_service.fail_stale_runs(db_session, max_error_messages=max_error_messages)


def create_app(
    app_settings: Settings = settings,
    *,
    services: AppServices | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        state_services: AppServices = application.state.services
        structured_log(
            logger,
            "info",
            "app.startup",
            collectors=state_services.registry.names(),
            scheduler_enabled=app_settings.scheduler_enabled,
            log_format=app_settings.log_format,
        )
        await recover_stale_runs(
            state_services.session_factory,
            max_error_messages=app_settings.collector_max_error_messages,
        )
        await state_services.scheduler.start()
        yield
        await state_services.scheduler.stop()
        await close_engine()

    services = services or build_services(app_settings, session_factory=get_session_factory())
    application = FastAPI(title=app_settings.app_name, lifespan=lifespan)
    application.state.services = services
    application.state.scheduler = services.scheduler
    application.state.collector_registry = services.registry
    application.state.control_store = services.control_store
    application.state.activity_log = services.activity_log

    register_api_exception_handlers(application)
    application.add_middleware(
        RequestLoggingMiddleware,
        log_requests=app_settings.log_requests,
        skip_paths=parse_csv_list(app_settings.log_request_skip_paths),
    )
    application.include_router(api_router)

    @application.get("/healthz")
    async def healthz() -> dict[str, str]:
        if await check_database():
            return {"status": "ok"}
        raise HTTPException(status_code=500, detail="database unavailable")

    return application


app = create_app()
