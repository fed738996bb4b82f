from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from profilehub.api.errors import ApiException
from profilehub.api.responses import success_payload
from profilehub.api.runtime_deps import get_scheduler
from profilehub.api.schemas.common import error_responses
from profilehub.api.schemas.runs import RunDetailEnvelope, RunsListEnvelope
from profilehub.db.models import ACTIVE_RUN_STATUSES, CollectorRun
from profilehub.db.session import get_db_session
from profilehub.services.domains.runs import application as run_service
from profilehub.services.domains.scheduling.scheduler import SchedulerService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/runs",
    tags=["api-runs"],
    responses=error_responses(422),
)


def serialize_run(run: CollectorRun) -> dict[str, Any]:
    return {
        "id": int(run.id),
        "collector": run.collector,
        "source": run.source,
        "trigger_type": run.trigger_type.value,
        "status": run.status.value,
        "started_at": run_service.ensure_utc(run.started_at),
        "last_activity_at": run_service.ensure_utc(run.last_activity_at),
        "finished_at": run_service.ensure_utc(run.finished_at),
        "created_count": int(run.created_count or 0),
        "skipped_count": int(run.skipped_count or 0),
        "errored_count": int(run.errored_count or 0),
    }


async def _get_run_or_404(db_session: AsyncSession, run_id: int) -> CollectorRun:
    run = await run_service.get_run(db_session, run_id=run_id)
    if run is None:
        raise ApiException(
            status_code=404,
            code="run_not_found",
            message="Run not found.",
        )
    return run


def _run_detail(
    run: CollectorRun,
    *,
    scheduler: SchedulerService,
    cancel_requested: bool = False,
) -> dict[str, Any]:
    return {
        "run": serialize_run(run),
        "summary": run_service.extract_run_summary(run),
        "in_flight": scheduler.in_flight_run_id(run.collector) == run.id,
        "cancel_requested": cancel_requested,
    }


@router.get(
    "",
    response_model=RunsListEnvelope,
)
async def list_runs(
    request: Request,
    collector: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db_session: AsyncSession = Depends(get_db_session),
):
    runs = await run_service.list_runs(db_session, collector=collector, limit=limit)
    return success_payload(
        request,
        data={"runs": [serialize_run(run) for run in runs]},
    )


@router.get(
    "/{run_id}",
    response_model=RunDetailEnvelope,
    responses=error_responses(404),
)
async def get_run(
    run_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    run = await _get_run_or_404(db_session, run_id)
    return success_payload(request, data=_run_detail(run, scheduler=scheduler))


@router.post(
    "/{run_id}/cancel",
    response_model=RunDetailEnvelope,
    responses=error_responses(404),
)
async def cancel_run(
    run_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    run = await _get_run_or_404(db_session, run_id)
    cancel_requested = scheduler.cancel_run(run.id)
    if not cancel_requested and run.status in ACTIVE_RUN_STATUSES:
        # No task in this process owns the run; close it out directly.
        cancel_requested = await run_service.cancel_orphaned_run(db_session, run=run)
        await db_session.refresh(run)
    logger.info(
        "api.run_cancel_requested",
        extra={
            "event": "api.run_cancel_requested",
            "run_id": run.id,
            "collector": run.collector,
            "cancel_requested": cancel_requested,
        },
    )
    return success_payload(
        request,
        data=_run_detail(run, scheduler=scheduler, cancel_requested=cancel_requested),
    )
