"""Create researcher profile and collector control schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUM_VALUES = {
    "degree_level": ("masters", "phd", "postdoc"),
    "sector": ("academia", "government", "private", "ngo", "unknown"),
    "enrichment_status": ("pending", "partial", "complete"),
    "run_trigger_type": ("manual", "scheduled"),
    "collector_run_status": ("created", "running", "completed", "failed", "cancelled"),
    "collector_status": ("running", "paused", "stopped"),
}


def _enum_ref(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_VALUES[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUM_VALUES.items():
        sa.Enum(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "researchers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("institution", sa.Text(), nullable=False),
        sa.Column("graduation_year", sa.Integer(), nullable=False),
        sa.Column("degree_level", _enum_ref("degree_level"), nullable=True),
        sa.Column("research_field", sa.Text(), server_default=sa.text("'unknown'"), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("professional_url", sa.Text(), nullable=True),
        sa.Column("cv_url", sa.Text(), nullable=True),
        sa.Column("current_city", sa.String(length=255), nullable=True),
        sa.Column("current_state", sa.String(length=64), nullable=True),
        sa.Column(
            "current_sector",
            _enum_ref("sector"),
            server_default=sa.text("'unknown'"),
            nullable=False,
        ),
        sa.Column("current_job_title", sa.Text(), nullable=True),
        sa.Column("current_company", sa.Text(), nullable=True),
        sa.Column(
            "enrichment_status",
            _enum_ref("enrichment_status"),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("last_enriched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_researchers")),
        sa.UniqueConstraint(
            "name",
            "institution",
            "graduation_year",
            name="uq_researchers_identity",
        ),
    )
    op.create_index(
        "ix_researchers_enrichment_status_professional_url",
        "researchers",
        ["enrichment_status", "professional_url"],
        unique=False,
    )

    op.create_table(
        "publications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("researcher_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("defense_year", sa.Integer(), nullable=False),
        sa.Column("institution", sa.Text(), nullable=False),
        sa.Column("program", sa.Text(), nullable=True),
        sa.Column("abstract", sa.Text(), nullable=True),
        sa.Column("advisor_name", sa.Text(), nullable=True),
        sa.Column(
            "keywords",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(
            ["researcher_id"],
            ["researchers.id"],
            name=op.f("fk_publications_researcher_id_researchers"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_publications")),
        sa.UniqueConstraint(
            "researcher_id",
            "title",
            "defense_year",
            name="uq_publications_identity",
        ),
    )
    op.create_index("ix_publications_researcher_id", "publications", ["researcher_id"], unique=False)

    op.create_table(
        "collector_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("collector", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("trigger_type", _enum_ref("run_trigger_type"), nullable=False),
        sa.Column("status", _enum_ref("collector_run_status"), nullable=False),
        sa.Column("targets_total", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("targets_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("skipped_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("errored_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "error_messages",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("interrupted_reason", sa.String(length=64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_collector_runs")),
    )
    op.create_index(
        "ix_collector_runs_collector_started",
        "collector_runs",
        ["collector", "started_at"],
        unique=False,
    )
    op.create_index(
        "uq_collector_runs_collector_active",
        "collector_runs",
        ["collector"],
        unique=True,
        postgresql_where=sa.text("status IN ('created', 'running')"),
    )

    op.create_table(
        "collector_control_states",
        sa.Column("collector", sa.String(length=64), nullable=False),
        sa.Column("status", _enum_ref("collector_status"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("collector", name=op.f("pk_collector_control_states")),
    )


def downgrade() -> None:
    op.drop_table("collector_control_states")
    op.drop_index("uq_collector_runs_collector_active", table_name="collector_runs")
    op.drop_index("ix_collector_runs_collector_started", table_name="collector_runs")
    op.drop_table("collector_runs")
    op.drop_index("ix_publications_researcher_id", table_name="publications")
    op.drop_table("publications")
    op.drop_index("ix_researchers_enrichment_status_professional_url", table_name="researchers")
    op.drop_table("researchers")

    bind = op.get_bind()
    for name, values in reversed(ENUM_VALUES.items()):
        sa.Enum(*values, name=name).drop(bind, checkfirst=True)
