"""
consent.py — Consent Store.

Keeps one ConsentRecord per identity (anonymous id until identify(), then user id) and
mirrors the current category map to a single durable key, `cvplus_consent`, as a
JSON object {category: bool}. The key is read once in load() and written on every
set_consent().

Failure semantics:
  - storage unreadable / corrupt  → necessary-only, `degraded=True` (SDK runs in minimal mode)
  - storage unwritable            → in-memory record still updated, warning logged

Records are never deleted. Every change appends the new record to `history` so the
sequence of grants and withdrawals stays auditable.
"""
import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Union

from cvplus_analytics.config import PrivacyConfig
from cvplus_analytics.errors import ConsentStorageError
from cvplus_analytics.sdk.environment import KeyValueStorage
from cvplus_analytics.sdk.schemas import (
    ConsentCategory,
    ConsentMechanism,
    ConsentRecord,
    default_consent_map,
    utcnow,
)

logger = logging.getLogger(__name__)

CONSENT_STORAGE_KEY = "cvplus_consent"


def _coerce_categories(
    categories: Mapping[Union[ConsentCategory, str], bool],
) -> Dict[ConsentCategory, bool]:
    """Accept enum or string keys; unknown category names are ignored with a warning."""
    result: Dict[ConsentCategory, bool] = {}
    for key, granted in categories.items():
        try:
            result[ConsentCategory(key)] = bool(granted)
        except ValueError:
            logger.warning("Ignoring unknown consent category %r", key)
    return result


class ConsentStore:
    def __init__(
        self,
        storage: KeyValueStorage,
        privacy: PrivacyConfig,
        do_not_track: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._privacy = privacy
        self._do_not_track = do_not_track and privacy.respect_do_not_track
        self._clock = clock
        self._records: Dict[str, ConsentRecord] = {}
        self.history: List[ConsentRecord] = []
        self.degraded = False

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _read_stored_map(self) -> Dict[ConsentCategory, bool]:
        try:
            raw = await self._storage.get(CONSENT_STORAGE_KEY)
        except Exception as exc:
            raise ConsentStorageError(f"Consent storage unreadable: {exc}") from exc
        if raw is None:
            return {}
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ConsentStorageError(f"Stored consent is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConsentStorageError("Stored consent is not a JSON object")
        return _coerce_categories(parsed)

    async def load(self, identity: str) -> ConsentRecord:
        """
        Build the starting record for `identity`: defaults, then stored choices, then
        config.default_consent, then Do-Not-Track. Falls back to necessary-only when
        storage cannot be read.

        With consent_required=False analytics starts out granted (implied), so a stored
        explicit refusal or Do-Not-Track is the only thing that turns it off.
        """
        categories = default_consent_map()
        if not self._privacy.consent_required:
            categories[ConsentCategory.analytics] = True
        try:
            categories.update(await self._read_stored_map())
            self.degraded = False
        except ConsentStorageError as exc:
            logger.warning("%s; continuing with necessary-only consent", exc)
            self.degraded = True
            record = ConsentRecord(
                identity=identity,
                categories=default_consent_map(),
                mechanism=ConsentMechanism.legitimate_interest,
                recorded_at=self._clock(),
            )
            self._records[identity] = record
            self.history.append(record)
            return record

        for category in self._privacy.default_consent:
            categories[category] = True
        if self._do_not_track:
            categories[ConsentCategory.analytics] = False
            categories[ConsentCategory.marketing] = False

        record = ConsentRecord(
            identity=identity,
            categories=categories,
            mechanism=ConsentMechanism.implied,
            recorded_at=self._clock(),
        )
        self._records[identity] = record
        self.history.append(record)
        logger.debug("Consent loaded identity=%s approved=%s", identity, [c.value for c in record.approved()])
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_consent(self, identity: str) -> ConsentRecord:
        """Current record for identity; necessary-only for an identity never seen."""
        record = self._records.get(identity)
        if record is None:
            record = ConsentRecord(identity=identity, recorded_at=self._clock())
            self._records[identity] = record
        return record

    def has_category(self, identity: str, category: ConsentCategory) -> bool:
        return self.get_consent(identity).has(category)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def set_consent(
        self,
        identity: str,
        categories: Mapping[Union[ConsentCategory, str], bool],
        mechanism: ConsentMechanism = ConsentMechanism.explicit,
        is_anonymous: Optional[bool] = None,
    ) -> ConsentRecord:
        """
        Merge `categories` into the identity's record and persist the result.

        The in-memory record is replaced before the storage write is awaited, so any
        event built after this call starts sees the new consent even if the write fails.
        `necessary` cannot be withdrawn; a False for it is ignored.
        """
        previous = self.get_consent(identity)
        changes = _coerce_categories(categories)
        if changes.get(ConsentCategory.necessary) is False:
            logger.warning("Ignoring attempt to withdraw necessary consent identity=%s", identity)
        merged = dict(previous.categories)
        merged.update(changes)
        merged[ConsentCategory.necessary] = True

        revoked = [
            c for c in ConsentCategory
            if previous.categories.get(c, False) and not merged.get(c, False)
        ]
        now = self._clock()
        record = ConsentRecord(
            identity=identity,
            is_anonymous=previous.is_anonymous if is_anonymous is None else is_anonymous,
            categories=merged,
            mechanism=mechanism,
            recorded_at=now,
            withdrawn=bool(revoked),
            withdrawn_at=now if revoked else None,
        )
        self._records[identity] = record
        self.history.append(record)

        if self._do_not_track and record.has(ConsentCategory.analytics):
            logger.debug("Explicit analytics consent overrides Do-Not-Track identity=%s", identity)
            self._do_not_track = False

        try:
            payload = json.dumps({c.value: granted for c, granted in record.categories.items()})
            await self._storage.set(CONSENT_STORAGE_KEY, payload)
        except Exception:
            logger.warning("Failed to persist consent identity=%s", identity, exc_info=True)

        logger.info(
            "Consent updated identity=%s approved=%s withdrawn=%s",
            identity,
            [c.value for c in record.approved()],
            [c.value for c in revoked],
        )
        return record

    def rebind(self, old_identity: str, new_identity: str, is_anonymous: bool = False) -> ConsentRecord:
        """Carry one identity's consent over to another, e.g. anonymous id to a newly identified user."""
        source = self.get_consent(old_identity)
        record = source.model_copy(update={"identity": new_identity, "is_anonymous": is_anonymous})
        self._records[new_identity] = record
        self.history.append(record)
        return record
