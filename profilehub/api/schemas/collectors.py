from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from profilehub.api.schemas.common import ApiMeta
from profilehub.db.models import CollectorStatus
from profilehub.services.domains.activity.application import ActivityLevel
from profilehub.services.domains.control.application import ControlAction


class CollectorData(BaseModel):
    name: str
    source: str
    description: str
    status: CollectorStatus
    interval_minutes: int
    enrichment_allowed: bool
    in_flight_run_id: int | None = None

    model_config = ConfigDict(extra="forbid")


class CollectorsListData(BaseModel):
    collectors: list[CollectorData]

    model_config = ConfigDict(extra="forbid")


class CollectorsListEnvelope(BaseModel):
    data: CollectorsListData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class CollectorControlRequest(BaseModel):
    action: ControlAction

    model_config = ConfigDict(extra="forbid")


class CollectorEnvelope(BaseModel):
    data: CollectorData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class TriggerRunData(BaseModel):
    collector: str
    run_id: int

    model_config = ConfigDict(extra="forbid")


class TriggerRunEnvelope(BaseModel):
    data: TriggerRunData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class ActivityLogEntryData(BaseModel):
    collector: str
    level: ActivityLevel
    message: str
    timestamp: datetime

    model_config = ConfigDict(extra="forbid")


class ActivityLogListData(BaseModel):
    logs: list[ActivityLogEntryData] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class ActivityLogListEnvelope(BaseModel):
    data: ActivityLogListData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class ActivityLogClearData(BaseModel):
    cleared: str

    model_config = ConfigDict(extra="forbid")


class ActivityLogClearEnvelope(BaseModel):
    data: ActivityLogClearData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")
