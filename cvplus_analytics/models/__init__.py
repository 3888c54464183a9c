"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from cvplus_analytics.models.analytics_aggregate import AnalyticsAggregateORM
from cvplus_analytics.models.analytics_event import AnalyticsEventORM
from cvplus_analytics.models.consent_record import ConsentRecordORM
from cvplus_analytics.models.realtime_counter import RealtimeCounterORM

__all__ = ["AnalyticsEventORM", "AnalyticsAggregateORM", "RealtimeCounterORM", "ConsentRecordORM"]
