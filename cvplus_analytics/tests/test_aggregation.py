"""
Aggregation rollups on plain rows: bounce/engagement/conversion definitions,
determinism, malformed-row handling and top-N tie order.
"""
import random
from datetime import datetime, timedelta, timezone

import pytest

from cvplus_analytics.engine.aggregation import compute_aggregate, parse_row
from cvplus_analytics.engine.schemas import AggregationPeriod

START = datetime(2026, 3, 2, tzinfo=timezone.utc)
AS_OF = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)


def row(event_id, event_type="view", session_id="s1", minute=0, **fields):
    return {
        "id": event_id,
        "event_type": event_type,
        "session_id": session_id,
        "occurred_at": START + timedelta(minutes=minute),
        "duration_ms": fields.get("duration_ms"),
        "country": fields.get("country"),
        "referrer": fields.get("referrer"),
        "payload": fields.get("payload", {}),
    }


def aggregate(rows, top_n=10):
    return compute_aggregate("profile", "p1", AggregationPeriod.day, START, rows, as_of=AS_OF, top_n=top_n)


def test_bounce_rate_and_unique_sessions() -> None:
    rows = [
        row("e1", session_id="s1", minute=1),
        row("e2", session_id="s1", minute=2),
        row("e3", session_id="s2", minute=3),
    ]
    metrics = aggregate(rows).metrics

    assert metrics.views == 3
    assert metrics.unique_sessions == 2
    assert metrics.total_sessions == 2
    assert metrics.bounce_rate == 50.0


def test_engagement_is_mean_of_longest_per_session() -> None:
    rows = [
        row("e1", session_id="s1", duration_ms=1000),
        row("e2", session_id="s1", duration_ms=3000),
        row("e3", session_id="s2", duration_ms=2000),
        row("e4", session_id="s3"),
    ]
    assert aggregate(rows).metrics.average_engagement_ms == 2500.0


def test_conversions_and_content_counts() -> None:
    rows = [
        row("e1", session_id="s1"),
        row("e2", session_id="s2", event_type="page"),
        row("e3", session_id="s1", event_type="contact_form_submit"),
        row("e4", session_id="s2", event_type="calendar_booking"),
        row("e5", session_id="s2", event_type="cv_downloaded"),
        row("e6", session_id="s2", event_type="download"),
        row("e7", session_id="s1", event_type="social_share"),
    ]
    metrics = aggregate(rows).metrics

    assert metrics.views == 2
    assert metrics.contacts == 1
    assert metrics.bookings == 1
    assert metrics.conversions == 2
    assert metrics.conversion_rate == 100.0
    assert metrics.downloads == 2
    assert metrics.shares == 1
    assert metrics.total_events == 7


def test_recompute_is_byte_identical_regardless_of_row_order() -> None:
    rows = [
        row(f"e{i}", session_id=f"s{i % 3}", minute=i, country=["DE", "FR", "US"][i % 3],
            duration_ms=float(i * 100))
        for i in range(30)
    ]
    shuffled = list(rows)
    random.Random(7).shuffle(shuffled)

    assert aggregate(rows).model_dump_json() == aggregate(shuffled).model_dump_json()


def test_malformed_rows_lower_completeness() -> None:
    rows = [
        row("e1"),
        row("e2", session_id="s2"),
        row("e3", session_id="s3"),
        row("bad1", session_id=""),
    ]
    result = aggregate(rows)

    assert result.metrics.total_events == 3
    assert result.data_completeness == 75.0


def test_non_object_payload_is_malformed() -> None:
    rows = [row("e1"), row("bad", payload="not-an-object")]
    assert aggregate(rows).data_completeness == 50.0


def test_empty_window_is_complete_and_zero() -> None:
    result = aggregate([])

    assert result.data_completeness == 100.0
    assert result.metrics.total_events == 0
    assert result.metrics.bounce_rate == 0.0
    assert result.window_end == START + timedelta(days=1)


def test_rows_outside_window_are_ignored() -> None:
    rows = [row("e1", minute=10), row("late", minute=24 * 60), row("early", minute=-1)]
    assert aggregate(rows).metrics.total_events == 1


def test_top_n_ties_keep_first_seen_order() -> None:
    rows = [
        row("e1", minute=1, country="DE"),
        row("e2", minute=2, country="FR"),
        row("e3", minute=3, country="DE"),
        row("e4", minute=4, country="FR"),
        row("e5", minute=5, country="US"),
    ]
    geography = aggregate(rows, top_n=2).metrics.geography

    assert [(g.key, g.count, g.percentage) for g in geography] == [("DE", 2, 40.0), ("FR", 2, 40.0)]


def test_missing_breakdown_keys_use_placeholders() -> None:
    metrics = aggregate([row("e1")]).metrics

    assert metrics.geography[0].key == "unknown"
    assert metrics.referrers[0].key == "direct"
    assert metrics.referrers[0].percentage == 100.0


def test_section_and_feature_usage_from_payload() -> None:
    rows = [
        row("e1", event_type="section_view", duration_ms=1000,
            payload={"properties": {"extra": {"section_id": "experience"}}}),
        row("e2", event_type="section_view", duration_ms=3000,
            payload={"properties": {"extra": {"section_id": "experience"}}}),
        row("e3", event_type="feature_used",
            payload={"properties": {"details": [{"kind": "cv", "feature": "ats_check"}]}}),
    ]
    metrics = aggregate(rows).metrics

    assert metrics.top_sections[0].key == "experience"
    assert metrics.top_sections[0].count == 2
    assert metrics.top_sections[0].average_duration_ms == 2000.0
    assert metrics.top_features[0].key == "ats_check"


def test_device_and_browser_read_from_context() -> None:
    parsed = parse_row(row("e1", payload={"context": {"device": {"type": "mobile"}, "browser": {"name": "Safari"}}}))
    assert parsed.device_type == "mobile"
    assert parsed.browser == "Safari"


def test_aggregate_id_is_deterministic() -> None:
    result = aggregate([row("e1")])
    assert result.id == "profile:p1:day:2026-03-02T00:00:00+00:00"
    assert result.last_updated == AS_OF


@pytest.mark.parametrize(
    "period, ts, start, end",
    [
        (AggregationPeriod.hour, datetime(2026, 3, 2, 14, 37, tzinfo=timezone.utc),
         datetime(2026, 3, 2, 14, tzinfo=timezone.utc), datetime(2026, 3, 2, 15, tzinfo=timezone.utc)),
        (AggregationPeriod.week, datetime(2026, 10, 21, 9, tzinfo=timezone.utc),
         datetime(2026, 10, 19, tzinfo=timezone.utc), datetime(2026, 10, 26, tzinfo=timezone.utc)),
        (AggregationPeriod.month, datetime(2026, 12, 15, tzinfo=timezone.utc),
         datetime(2026, 12, 1, tzinfo=timezone.utc), datetime(2027, 1, 1, tzinfo=timezone.utc)),
    ],
)
def test_period_alignment(period, ts, start, end) -> None:
    assert period.align(ts) == start
    assert period.window_end(start) == end
