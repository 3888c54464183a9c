"""
models/consent_record.py — SQLAlchemy ORM for the consent audit trail.

Table: consent_records
Append-only: every grant or withdrawal is a new row. Nothing deletes from this table,
including retention maintenance.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from cvplus_analytics.database import Base, JSONType


class ConsentRecordORM(Base):
    """
    categories: {category: bool} as recorded; `necessary` is always true.
    """
    __tablename__ = "consent_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="consent_... id from the client")
    identity: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    categories: Mapped[dict] = mapped_column(JSONType, nullable=False)
    mechanism: Mapped[str] = mapped_column(String(32), nullable=False)
    withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
