"""initial_analytics_schema

Revision ID: 001_initial_analytics_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000 UTC

Creates the four analytics tables:
  analytics_events      append-only accepted events, retention-bounded
  analytics_aggregates  period rollups keyed "{entity_type}:{entity_id}:{period}:{window_start}"
  realtime_analytics    per-entity short-window counters with a CAS version column
  consent_records       append-only consent audit trail
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_analytics_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "analytics_events",
        sa.Column("id", sa.String(64), nullable=False, comment="Client-generated event id (evt_...), globally unique"),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_name", sa.String(255), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False, comment="Ephemeral browsing session id"),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, comment="Client timestamp of the event"),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("country", sa.String(64), nullable=True),
        sa.Column("referrer", sa.String(2048), nullable=True),
        sa.Column("user_agent", sa.String(1024), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column(
            "payload",
            _JSON,
            nullable=False,
            comment="Full client event. Cleared of properties and context by anonymization.",
        ),
        sa.Column("is_bot", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_anonymized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retention_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_analytics_events_event_type", "analytics_events", ["event_type"])
    op.create_index("ix_analytics_events_session_id", "analytics_events", ["session_id"])
    op.create_index("ix_analytics_events_occurred_at", "analytics_events", ["occurred_at"])
    op.create_index("ix_analytics_events_retention_expires_at", "analytics_events", ["retention_expires_at"])
    op.create_index(
        "ix_analytics_events_entity_time",
        "analytics_events",
        ["entity_type", "entity_id", "occurred_at"],
    )

    op.create_table(
        "analytics_aggregates",
        sa.Column("id", sa.String(320), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("period", sa.String(16), nullable=False, comment="hour | day | week | month"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metrics", _JSON, nullable=False),
        sa.Column(
            "data_completeness",
            sa.Float(),
            nullable=False,
            comment="Percentage of fetched events that parsed cleanly",
        ),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_analytics_aggregates_entity_period",
        "analytics_aggregates",
        ["entity_type", "entity_id", "period", "window_start"],
    )

    op.create_table(
        "realtime_analytics",
        sa.Column("id", sa.String(192), nullable=False, comment="{entity_type}:{entity_id}"),
        sa.Column("data", _JSON, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "consent_records",
        sa.Column("id", sa.String(64), nullable=False, comment="consent_... id from the client"),
        sa.Column("identity", sa.String(128), nullable=False),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False),
        sa.Column("categories", _JSON, nullable=False),
        sa.Column("mechanism", sa.String(32), nullable=False),
        sa.Column("withdrawn", sa.Boolean(), nullable=False),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_consent_records_identity", "consent_records", ["identity"])


def downgrade() -> None:
    op.drop_index("ix_consent_records_identity", table_name="consent_records")
    op.drop_table("consent_records")
    op.drop_table("realtime_analytics")
    op.drop_index("ix_analytics_aggregates_entity_period", table_name="analytics_aggregates")
    op.drop_table("analytics_aggregates")
    op.drop_index("ix_analytics_events_entity_time", table_name="analytics_events")
    op.drop_index("ix_analytics_events_retention_expires_at", table_name="analytics_events")
    op.drop_index("ix_analytics_events_occurred_at", table_name="analytics_events")
    op.drop_index("ix_analytics_events_session_id", table_name="analytics_events")
    op.drop_index("ix_analytics_events_event_type", table_name="analytics_events")
    op.drop_table("analytics_events")
