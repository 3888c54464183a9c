"""
models/analytics_event.py — SQLAlchemy ORM for accepted analytics events.

Table: analytics_events
Append-only. One row per event accepted by POST /analytics/batch. Rows are only ever
touched again by retention maintenance (anonymize, then delete after
retention_expires_at).
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cvplus_analytics.database import Base, JSONType


class AnalyticsEventORM(Base):
    """
    ORM model for a single ingested event.

    entity_type / entity_id: what the event is about (a public CV profile, the app itself).
    event_type:  aggregation type; client `page` events are stored as `view`.
    payload:     the full client event as JSON; property values live here only.
    ip_address:  already anonymized at ingestion when the event's privacy block asks for it.
    """
    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("ix_analytics_events_entity_time", "entity_type", "entity_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Client-generated event id (evt_...), globally unique",
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Ephemeral browsing session id",
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    device_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="Client timestamp of the event",
    )
    duration_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    referrer: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Full client event. Cleared of properties and context by anonymization.",
    )
    is_bot: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_anonymized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retention_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
