"""
AnalyticsSDK end to end with a scripted transport and manual timers: consent gating,
minimal mode, identify, and what does (and never does) reach the wire.
"""
import json

import pytest

from cvplus_analytics.errors import ConfigurationError
from cvplus_analytics.sdk.client import AnalyticsSDK, extract_feature, filter_traits
from cvplus_analytics.sdk.consent import CONSENT_STORAGE_KEY
from cvplus_analytics.sdk.environment import InMemoryStorage, StaticEnvironment
from cvplus_analytics.sdk.schemas import ConsentCategory
from cvplus_analytics.sdk.session import MINIMAL_DEVICE_ID
from cvplus_analytics.tests.fakes import CHROME_UA, BrokenStorage, ManualScheduler, ScriptedTransport


def make_sdk(default_consent=None, storage=None, consent_required=True, **config):
    transport = ScriptedTransport()
    env = StaticEnvironment(
        url="https://cvplus.io/dashboard?tab=cv",
        title="Dashboard",
        user_agent=CHROME_UA,
        storage=storage or InMemoryStorage(),
    )
    sdk = AnalyticsSDK(
        {
            "api_key": "test-key",
            "queue": {"flush_interval": 1000, "flush_batch_size": 10},
            "privacy": {
                "consent_required": consent_required,
                "default_consent": default_consent or [],
            },
            **config,
        },
        env,
        transport=transport,
        scheduler=ManualScheduler(),
    )
    return sdk, transport


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("api_key", ["", "   "])
def test_blank_api_key_is_rejected(api_key: str) -> None:
    with pytest.raises(ConfigurationError):
        AnalyticsSDK({"api_key": api_key}, StaticEnvironment(), transport=ScriptedTransport())


def test_invalid_config_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        AnalyticsSDK(
            {"api_key": "k", "queue": {"max_size": 5, "flush_batch_size": 10}},
            StaticEnvironment(),
            transport=ScriptedTransport(),
        )


def test_transport_inherits_api_key() -> None:
    sdk = AnalyticsSDK({"api_key": "k"}, StaticEnvironment(), transport=ScriptedTransport())
    assert sdk.config.transport.api_key == "k"


def test_tracking_before_initialize_is_dropped() -> None:
    sdk, _ = make_sdk()
    assert sdk.track("cv_generated") is None
    assert sdk.queue.size() == 0


# ---------------------------------------------------------------------------
# Consent gating
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_without_analytics_consent_only_page_views_are_captured() -> None:
    sdk, _ = make_sdk()
    await sdk.initialize()
    assert sdk.minimal is True

    assert sdk.track("cv_generated") is None
    assert sdk.queue.size() == 0

    assert sdk.page(category="app", name="dashboard") is not None
    assert sdk.queue.size() == 1

    page = sdk.queue.pending()[0]
    assert page.event_name == "page_view"
    assert page.properties.get("page").path == "/dashboard"
    assert page.properties.get("page").search == "?tab=cv"
    assert page.privacy.consent_given is False
    assert page.device_id == MINIMAL_DEVICE_ID


@pytest.mark.asyncio
async def test_non_consented_events_never_reach_transport() -> None:
    sdk, transport = make_sdk()
    await sdk.initialize()

    sdk.page()
    sdk.track("cv_generated")
    sdk.track_product_event("cv_downloaded")
    sdk.track_error("render_failed", ValueError("boom"))
    sdk.identify("user_1", {"plan": "pro"})
    await sdk.flush()

    assert [e.event_name for e in transport.sent] == ["page_view"]
    assert sdk.session.current.user_id == "user_1"


@pytest.mark.asyncio
async def test_withdrawing_consent_keeps_snapshots_of_queued_events() -> None:
    sdk, _ = make_sdk(default_consent=[ConsentCategory.analytics])
    await sdk.initialize()
    assert sdk.minimal is False

    for i in range(5):
        assert sdk.track(f"step_{i}") is not None
    before = [e.privacy for e in sdk.queue.pending()]

    record = await sdk.update_consent({"analytics": False})

    assert record.withdrawn is True
    queued = sdk.queue.pending()
    assert [e.privacy for e in queued[:5]] == before
    assert all(e.privacy.consent_given for e in queued[:5])

    # the consent-change audit event itself is necessary-only and still captured
    audit = queued[5]
    assert audit.event_name == "consent_updated"
    assert audit.privacy.consent_given is False
    assert audit.properties.extra["withdrawn_categories"] == ["analytics"]

    assert sdk.track("after_withdrawal") is None
    assert sdk.queue.size() == 6


@pytest.mark.asyncio
async def test_granting_consent_leaves_minimal_mode() -> None:
    sdk, _ = make_sdk()
    await sdk.initialize()
    minimal_session = sdk.session.current

    await sdk.update_consent({ConsentCategory.analytics: True})

    assert sdk.minimal is False
    assert sdk.session.current.device_id != MINIMAL_DEVICE_ID
    assert sdk.session.current.session_id != minimal_session.session_id
    assert sdk.track("cv_generated") is not None


@pytest.mark.asyncio
async def test_unreadable_storage_runs_in_minimal_mode() -> None:
    sdk, _ = make_sdk(default_consent=[ConsentCategory.analytics], storage=BrokenStorage())
    await sdk.initialize()

    assert sdk.consent.degraded is True
    assert sdk.minimal is True
    assert sdk.session.current.device_id == MINIMAL_DEVICE_ID
    assert sdk.track("cv_generated") is None
    assert sdk.page() is not None


@pytest.mark.asyncio
async def test_consent_not_required_allows_tracking_unless_dnt() -> None:
    sdk, _ = make_sdk(consent_required=False)
    await sdk.initialize()
    assert sdk.has_consent(ConsentCategory.analytics) is True
    assert sdk.track("cv_generated") is not None

    dnt_env = StaticEnvironment(do_not_track=True)
    dnt = AnalyticsSDK(
        {"api_key": "k", "privacy": {"consent_required": False}},
        dnt_env,
        transport=ScriptedTransport(),
        scheduler=ManualScheduler(),
    )
    await dnt.initialize()
    assert dnt.has_consent(ConsentCategory.analytics) is False
    assert dnt.track("cv_generated") is None
    assert dnt.queue.size() == 0


@pytest.mark.asyncio
async def test_explicit_refusal_blocks_tracking_when_consent_not_required() -> None:
    sdk, _ = make_sdk(consent_required=False)
    await sdk.initialize()
    await sdk.update_consent({ConsentCategory.analytics: False})
    before = sdk.queue.size()

    assert sdk.has_consent(ConsentCategory.analytics) is False
    assert sdk.track("x", {}) is None
    assert sdk.queue.size() == before

    stored = InMemoryStorage({CONSENT_STORAGE_KEY: json.dumps({"analytics": False})})
    restarted, _ = make_sdk(consent_required=False, storage=stored)
    await restarted.initialize()

    assert restarted.has_consent(ConsentCategory.analytics) is False
    assert restarted.track("x", {}) is None
    assert restarted.queue.size() == 0
    assert restarted.page() is not None


# ---------------------------------------------------------------------------
# Tracking calls
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_identify_filters_traits_without_personalization() -> None:
    sdk, _ = make_sdk(default_consent=[ConsentCategory.analytics])
    await sdk.initialize()

    event_id = sdk.identify("user_42", {"plan": "pro", "email": "a@b.c", "role": "designer"})

    assert event_id is not None
    event = sdk.queue.pending()[-1]
    assert event.user_id == "user_42"
    assert event.properties.extra["traits"] == {"plan": "pro", "role": "designer"}
    assert sdk.identity == "user_42"
    assert sdk.has_consent(ConsentCategory.analytics)


@pytest.mark.asyncio
async def test_product_event_gets_feature_and_version() -> None:
    sdk, _ = make_sdk(default_consent=[ConsentCategory.analytics])
    await sdk.initialize()

    sdk.track_product_event("cv_generated", {"cv": {"template_id": "modern"}})

    cv = sdk.queue.pending()[-1].properties.get("cv")
    assert cv.feature == "cv_generation"
    assert cv.version == "dev"
    assert cv.template_id == "modern"


@pytest.mark.asyncio
async def test_invalid_events_are_counted_and_dropped() -> None:
    sdk, _ = make_sdk(default_consent=[ConsentCategory.analytics])
    await sdk.initialize()

    assert sdk.track("") is None
    assert sdk.track("bad_props", {"error": "not an object"}) is None
    assert sdk.invalid_events == 2
    assert sdk.queue.size() == 0


@pytest.mark.asyncio
async def test_batch_of_tracked_events_is_delivered() -> None:
    sdk, transport = make_sdk(default_consent=[ConsentCategory.analytics])
    await sdk.initialize()

    for i in range(10):
        sdk.track(f"event_{i}")
    await sdk._scheduler.run_due(max_delay=0)

    assert len(transport.batches) == 1
    assert sdk.status()["queue"]["delivered"] == 10

    await sdk.shutdown()
    assert sdk.initialized is False


def test_helpers() -> None:
    assert extract_feature("cv_generated") == "cv_generation"
    assert extract_feature("premium_unlocked") == "premium_features"
    assert extract_feature("signup") == "general"
    assert filter_traits({"plan": "pro", "email": "x"}, full=False) == {"plan": "pro"}
    assert filter_traits({"plan": "pro", "email": "x"}, full=True) == {"plan": "pro", "email": "x"}
