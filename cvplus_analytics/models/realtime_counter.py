"""
models/realtime_counter.py — SQLAlchemy ORM for short-window realtime counters.

Table: realtime_analytics
One row per entity, continuously overwritten. `version` is bumped on every write and
checked in the UPDATE's WHERE clause (optimistic compare-and-set).
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from cvplus_analytics.database import Base, JSONType


class RealtimeCounterORM(Base):
    __tablename__ = "realtime_analytics"

    id: Mapped[str] = mapped_column(String(192), primary_key=True, comment="{entity_type}:{entity_id}")
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
