"""
models/analytics_aggregate.py — SQLAlchemy ORM for period rollups.

Table: analytics_aggregates
Primary key is deterministic, "{entity_type}:{entity_id}:{period}:{window_start ISO}",
so recomputing a window overwrites the same row instead of adding a new one.
"""
from datetime import datetime

from sqlalchemy import DateTime, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cvplus_analytics.database import Base, JSONType


class AnalyticsAggregateORM(Base):
    """
    metrics: the full AnalyticsAggregate metric block, replaced wholesale on every upsert.
    """
    __tablename__ = "analytics_aggregates"
    __table_args__ = (
        Index("ix_analytics_aggregates_entity_period", "entity_type", "entity_id", "period", "window_start"),
    )

    id: Mapped[str] = mapped_column(String(320), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False, comment="hour | day | week | month")
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metrics: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    data_completeness: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=100.0,
        comment="Percentage of fetched events that parsed cleanly",
    )
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
