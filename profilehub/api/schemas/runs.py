from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from profilehub.api.schemas.common import ApiMeta


class RunListItemData(BaseModel):
    id: int
    collector: str
    source: str
    trigger_type: str
    status: str
    started_at: datetime
    last_activity_at: datetime | None
    finished_at: datetime | None
    created_count: int
    skipped_count: int
    errored_count: int

    model_config = ConfigDict(extra="forbid")


class RunsListData(BaseModel):
    runs: list[RunListItemData]

    model_config = ConfigDict(extra="forbid")


class RunsListEnvelope(BaseModel):
    data: RunsListData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class RunSummaryData(BaseModel):
    created_count: int
    skipped_count: int
    errored_count: int
    targets_total: int
    targets_processed: int
    success: bool
    error_messages: list[str] = Field(default_factory=list)
    interrupted_reason: str | None = None

    model_config = ConfigDict(extra="forbid")


class RunDetailData(BaseModel):
    run: RunListItemData
    summary: RunSummaryData
    in_flight: bool = False
    cancel_requested: bool = False

    model_config = ConfigDict(extra="forbid")


class RunDetailEnvelope(BaseModel):
    data: RunDetailData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")
