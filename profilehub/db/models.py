from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from profilehub.db.base import JSON_DOCUMENT, Base

RESEARCH_FIELD_UNKNOWN = "unknown"


class DegreeLevel(StrEnum):
    MASTERS = "masters"
    PHD = "phd"
    POSTDOC = "postdoc"


class Sector(StrEnum):
    ACADEMIA = "academia"
    GOVERNMENT = "government"
    PRIVATE = "private"
    NGO = "ngo"
    UNKNOWN = "unknown"


class EnrichmentStatus(StrEnum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"


class RunTriggerType(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class CollectorRunStatus(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CollectorStatus(StrEnum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


ACTIVE_RUN_STATUSES = (CollectorRunStatus.CREATED, CollectorRunStatus.RUNNING)
TERMINAL_RUN_STATUSES = (
    CollectorRunStatus.COMPLETED,
    CollectorRunStatus.FAILED,
    CollectorRunStatus.CANCELLED,
)


def _db_enum(enum_cls: type[StrEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


DEGREE_LEVEL_DB_ENUM = _db_enum(DegreeLevel, "degree_level")
SECTOR_DB_ENUM = _db_enum(Sector, "sector")
ENRICHMENT_STATUS_DB_ENUM = _db_enum(EnrichmentStatus, "enrichment_status")
RUN_TRIGGER_TYPE_DB_ENUM = _db_enum(RunTriggerType, "run_trigger_type")
COLLECTOR_RUN_STATUS_DB_ENUM = _db_enum(CollectorRunStatus, "collector_run_status")
COLLECTOR_STATUS_DB_ENUM = _db_enum(CollectorStatus, "collector_status")

ACTIVE_RUN_PREDICATE = "status IN ('created', 'running')"


class Researcher(Base):
    __tablename__ = "researchers"
    __table_args__ = (
        UniqueConstraint(
            "name",
            "institution",
            "graduation_year",
            name="uq_researchers_identity",
        ),
        Index(
            "ix_researchers_enrichment_status_professional_url",
            "enrichment_status",
            "professional_url",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    institution: Mapped[str] = mapped_column(Text, nullable=False)
    graduation_year: Mapped[int] = mapped_column(Integer, nullable=False)
    degree_level: Mapped[DegreeLevel | None] = mapped_column(DEGREE_LEVEL_DB_ENUM)
    research_field: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text(f"'{RESEARCH_FIELD_UNKNOWN}'")
    )
    email: Mapped[str | None] = mapped_column(String(320))
    professional_url: Mapped[str | None] = mapped_column(Text)
    cv_url: Mapped[str | None] = mapped_column(Text)
    current_city: Mapped[str | None] = mapped_column(String(255))
    current_state: Mapped[str | None] = mapped_column(String(64))
    current_sector: Mapped[Sector] = mapped_column(
        SECTOR_DB_ENUM, nullable=False, server_default=text("'unknown'")
    )
    current_job_title: Mapped[str | None] = mapped_column(Text)
    current_company: Mapped[str | None] = mapped_column(Text)
    enrichment_status: Mapped[EnrichmentStatus] = mapped_column(
        ENRICHMENT_STATUS_DB_ENUM, nullable=False, server_default=text("'pending'")
    )
    last_enriched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Publication(Base):
    __tablename__ = "publications"
    __table_args__ = (
        UniqueConstraint(
            "researcher_id",
            "title",
            "defense_year",
            name="uq_publications_identity",
        ),
        Index("ix_publications_researcher_id", "researcher_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    researcher_id: Mapped[int] = mapped_column(
        ForeignKey("researchers.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    defense_year: Mapped[int] = mapped_column(Integer, nullable=False)
    institution: Mapped[str] = mapped_column(Text, nullable=False)
    program: Mapped[str | None] = mapped_column(Text)
    abstract: Mapped[str | None] = mapped_column(Text)
    advisor_name: Mapped[str | None] = mapped_column(Text)
    keywords: Mapped[list[str]] = mapped_column(
        JSON_DOCUMENT, nullable=False, default=list
    )
    source_url: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class CollectorRun(Base):
    __tablename__ = "collector_runs"
    __table_args__ = (
        Index("ix_collector_runs_collector_started", "collector", "started_at"),
        Index(
            "uq_collector_runs_collector_active",
            "collector",
            unique=True,
            postgresql_where=text(ACTIVE_RUN_PREDICATE),
            sqlite_where=text(ACTIVE_RUN_PREDICATE),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    collector: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_type: Mapped[RunTriggerType] = mapped_column(
        RUN_TRIGGER_TYPE_DB_ENUM, nullable=False
    )
    status: Mapped[CollectorRunStatus] = mapped_column(
        COLLECTOR_RUN_STATUS_DB_ENUM, nullable=False
    )
    targets_total: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    targets_processed: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    created_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    skipped_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    errored_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    error_messages: Mapped[list[str]] = mapped_column(
        JSON_DOCUMENT, nullable=False, default=list
    )
    interrupted_reason: Mapped[str | None] = mapped_column(String(64))
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class CollectorControlState(Base):
    __tablename__ = "collector_control_states"

    collector: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[CollectorStatus] = mapped_column(
        COLLECTOR_STATUS_DB_ENUM, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
