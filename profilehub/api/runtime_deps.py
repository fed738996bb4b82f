from __future__ import annotations

from fastapi import Request

from profilehub.services.domains.activity.application import ActivityLog
from profilehub.services.domains.collectors.registry import CollectorRegistry
from profilehub.services.domains.control.application import ControlStateStore
from profilehub.services.domains.scheduling.scheduler import SchedulerService


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


def get_collector_registry(request: Request) -> CollectorRegistry:
    return request.app.state.collector_registry


def get_control_store(request: Request) -> ControlStateStore:
    return request.app.state.control_store


def get_activity_log(request: Request) -> ActivityLog:
    return request.app.state.activity_log
