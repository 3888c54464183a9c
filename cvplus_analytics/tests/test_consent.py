"""Consent store: loading, storage failure modes, updates and the audit history."""
import json

import pytest

from cvplus_analytics.config import PrivacyConfig
from cvplus_analytics.sdk.consent import CONSENT_STORAGE_KEY, ConsentStore
from cvplus_analytics.sdk.environment import InMemoryStorage
from cvplus_analytics.sdk.schemas import ConsentCategory, ConsentMechanism
from cvplus_analytics.tests.fakes import BrokenStorage, ReadOnlyStorage


@pytest.mark.asyncio
async def test_fresh_identity_gets_necessary_only() -> None:
    store = ConsentStore(InMemoryStorage(), PrivacyConfig())
    record = await store.load("anon_1")

    assert record.approved() == [ConsentCategory.necessary]
    assert store.degraded is False


@pytest.mark.asyncio
async def test_stored_choices_are_loaded() -> None:
    storage = InMemoryStorage({CONSENT_STORAGE_KEY: json.dumps({"analytics": True, "bogus": True})})
    store = ConsentStore(storage, PrivacyConfig())

    record = await store.load("anon_1")

    assert record.has(ConsentCategory.analytics)
    assert not record.has(ConsentCategory.marketing)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stored, do_not_track, expected",
    [
        (None, False, True),
        ({"analytics": False}, False, False),
        (None, True, False),
    ],
)
async def test_consent_not_required_implies_analytics(stored, do_not_track, expected) -> None:
    storage = InMemoryStorage({CONSENT_STORAGE_KEY: json.dumps(stored)} if stored else {})
    store = ConsentStore(storage, PrivacyConfig(consent_required=False), do_not_track=do_not_track)

    record = await store.load("anon_1")

    assert record.has(ConsentCategory.analytics) is expected
    assert store.has_category("anon_1", ConsentCategory.analytics) is expected
    assert record.mechanism is ConsentMechanism.implied


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
async def test_corrupt_storage_degrades_to_necessary_only(raw: str) -> None:
    store = ConsentStore(InMemoryStorage({CONSENT_STORAGE_KEY: raw}), PrivacyConfig())
    record = await store.load("anon_1")

    assert store.degraded is True
    assert record.approved() == [ConsentCategory.necessary]


@pytest.mark.asyncio
async def test_unreadable_storage_degrades() -> None:
    store = ConsentStore(BrokenStorage(), PrivacyConfig(default_consent=[ConsentCategory.analytics]))
    record = await store.load("anon_1")

    assert store.degraded is True
    assert not record.has(ConsentCategory.analytics)


@pytest.mark.asyncio
async def test_do_not_track_denies_analytics_until_explicit_grant() -> None:
    store = ConsentStore(
        InMemoryStorage(),
        PrivacyConfig(default_consent=[ConsentCategory.analytics]),
        do_not_track=True,
    )
    assert not (await store.load("anon_1")).has(ConsentCategory.analytics)

    record = await store.set_consent("anon_1", {"analytics": True})
    assert record.has(ConsentCategory.analytics)


@pytest.mark.asyncio
async def test_set_consent_persists_and_cannot_withdraw_necessary() -> None:
    storage = InMemoryStorage()
    store = ConsentStore(storage, PrivacyConfig())
    await store.load("anon_1")

    record = await store.set_consent(
        "anon_1", {ConsentCategory.necessary: False, ConsentCategory.analytics: True}
    )

    assert record.has(ConsentCategory.necessary)
    assert record.mechanism is ConsentMechanism.explicit
    stored = json.loads(await storage.get(CONSENT_STORAGE_KEY))
    assert stored == {"necessary": True, "analytics": True, "marketing": False,
                      "personalization": False, "functional": False}


@pytest.mark.asyncio
async def test_withdrawal_is_recorded_not_deleted() -> None:
    store = ConsentStore(InMemoryStorage(), PrivacyConfig())
    await store.load("anon_1")
    granted = await store.set_consent("anon_1", {"analytics": True})
    withdrawn = await store.set_consent("anon_1", {"analytics": False})

    assert granted.withdrawn is False
    assert withdrawn.withdrawn is True
    assert withdrawn.withdrawn_at == withdrawn.recorded_at
    assert [r.has(ConsentCategory.analytics) for r in store.history] == [False, True, False]


@pytest.mark.asyncio
async def test_unwritable_storage_still_updates_in_memory() -> None:
    store = ConsentStore(ReadOnlyStorage(), PrivacyConfig())
    await store.load("anon_1")

    record = await store.set_consent("anon_1", {"analytics": True})

    assert record.has(ConsentCategory.analytics)
    assert store.has_category("anon_1", ConsentCategory.analytics)


@pytest.mark.asyncio
async def test_rebind_carries_consent_to_identified_user() -> None:
    store = ConsentStore(InMemoryStorage(), PrivacyConfig())
    await store.load("anon_1")
    await store.set_consent("anon_1", {"analytics": True})

    record = store.rebind("anon_1", "user_42")

    assert record.identity == "user_42"
    assert record.is_anonymous is False
    assert store.has_category("user_42", ConsentCategory.analytics)


def test_unknown_identity_has_necessary_only() -> None:
    store = ConsentStore(InMemoryStorage(), PrivacyConfig())
    assert store.get_consent("never_seen").approved() == [ConsentCategory.necessary]
