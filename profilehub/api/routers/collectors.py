from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from profilehub.api.responses import success_payload, success_response
from profilehub.api.runtime_deps import (
    get_activity_log,
    get_collector_registry,
    get_control_store,
    get_scheduler,
)
from profilehub.api.schemas.collectors import (
    ActivityLogClearEnvelope,
    ActivityLogListEnvelope,
    CollectorControlRequest,
    CollectorEnvelope,
    CollectorsListEnvelope,
    TriggerRunEnvelope,
)
from profilehub.api.schemas.common import error_responses
from profilehub.db.models import CollectorStatus
from profilehub.logging_utils import structured_log
from profilehub.services.domains.activity.application import ActivityLevel, ActivityLog
from profilehub.services.domains.activity.events import activity_event_stream
from profilehub.services.domains.collectors.registry import CollectorRegistry
from profilehub.services.domains.collectors.types import CollectorDefinition
from profilehub.services.domains.control.application import (
    ControlStateStore,
    status_for_action,
)
from profilehub.services.domains.scheduling.scheduler import SchedulerService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/collectors",
    tags=["api-collectors"],
    responses=error_responses(422),
)


def serialize_collector(
    definition: CollectorDefinition,
    *,
    status: CollectorStatus,
    in_flight_run_id: int | None,
) -> dict:
    return {
        "name": definition.name,
        "source": definition.source,
        "description": definition.description,
        "status": status.value,
        "interval_minutes": int(definition.interval_minutes),
        "enrichment_allowed": bool(definition.enrichment_allowed),
        "in_flight_run_id": in_flight_run_id,
    }


@router.get(
    "",
    response_model=CollectorsListEnvelope,
)
async def list_collectors(
    request: Request,
    registry: CollectorRegistry = Depends(get_collector_registry),
    control_store: ControlStateStore = Depends(get_control_store),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    statuses = await control_store.get_all(registry.names())
    in_flight = scheduler.in_flight_runs()
    return success_payload(
        request,
        data={
            "collectors": [
                serialize_collector(
                    definition,
                    status=statuses[definition.name],
                    in_flight_run_id=in_flight.get(definition.name),
                )
                for definition in registry
            ]
        },
    )


@router.get(
    "/logs",
    response_model=ActivityLogListEnvelope,
)
async def list_logs(
    request: Request,
    collector: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    activity_log: ActivityLog = Depends(get_activity_log),
):
    entries = activity_log.query(collector=collector, limit=limit)
    return success_payload(
        request,
        data={"logs": [entry.to_dict() for entry in entries]},
    )


@router.delete(
    "/logs",
    response_model=ActivityLogClearEnvelope,
)
async def clear_logs(
    request: Request,
    collector: str | None = Query(default=None),
    activity_log: ActivityLog = Depends(get_activity_log),
):
    activity_log.clear(collector)
    return success_payload(request, data={"cleared": collector or "all"})


@router.get("/logs/stream")
async def stream_logs(
    collector: str | None = Query(default=None),
    activity_log: ActivityLog = Depends(get_activity_log),
):
    return StreamingResponse(
        activity_event_stream(activity_log.broadcaster, collector=collector),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post(
    "/{name}/control",
    response_model=CollectorEnvelope,
    responses=error_responses(404),
)
async def set_collector_status(
    name: str,
    payload: CollectorControlRequest,
    request: Request,
    registry: CollectorRegistry = Depends(get_collector_registry),
    control_store: ControlStateStore = Depends(get_control_store),
    scheduler: SchedulerService = Depends(get_scheduler),
    activity_log: ActivityLog = Depends(get_activity_log),
):
    definition = registry.get(name)
    status = status_for_action(payload.action)
    await control_store.set_status(name, status)
    activity_log.append(name, ActivityLevel.INFO, f"Status set to {status.value}")
    structured_log(
        logger,
        "info",
        "api.collector_status_set",
        collector=name,
        action=payload.action.value,
        status=status.value,
    )
    return success_payload(
        request,
        data=serialize_collector(
            definition,
            status=status,
            in_flight_run_id=scheduler.in_flight_run_id(name),
        ),
    )


@router.post(
    "/{name}/runs",
    response_model=TriggerRunEnvelope,
    status_code=202,
    responses=error_responses(404, 409),
)
async def trigger_collector_run(
    name: str,
    request: Request,
    scheduler: SchedulerService = Depends(get_scheduler),
):
    run_id = await scheduler.trigger_now(name)
    return success_response(
        request,
        data={"collector": name, "run_id": run_id},
        status_code=202,
    )
