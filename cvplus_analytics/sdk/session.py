"""
session.py — Session Tracker.

Owns the current SessionInfo:
  - session_id     ephemeral; new on start_session() and after 30 minutes of inactivity
  - anonymous_id   persisted under `cvplus_anonymous_id` (full mode only)
  - device_id      sha256(salt | user agent | language | screen | timezone), salt persisted
                   under `cvplus_device_salt`. Stable per device, not reversible.
  - counters       page_views, event_count, last_activity

Minimal mode (no analytics consent, or consent storage unreadable) writes nothing to
storage and uses a constant device id, so nothing device-identifying is created.
"""
import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from cvplus_analytics.config import AnalyticsConfig
from cvplus_analytics.sdk.environment import EnvironmentProvider, utm_params
from cvplus_analytics.sdk.schemas import SessionInfo, utcnow

logger = logging.getLogger(__name__)

ANONYMOUS_ID_KEY = "cvplus_anonymous_id"
DEVICE_SALT_KEY = "cvplus_device_salt"
MINIMAL_DEVICE_ID = "minimal"
SESSION_IDLE_TIMEOUT = timedelta(minutes=30)


def derive_device_id(environment: EnvironmentProvider, salt: str) -> str:
    fingerprint = "|".join([
        salt,
        environment.user_agent or "",
        environment.language or "",
        f"{environment.screen_width}x{environment.screen_height}",
        environment.timezone or "",
    ])
    return "dev_" + hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:24]


def _new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex}"


class SessionTracker:
    def __init__(
        self,
        environment: EnvironmentProvider,
        config: AnalyticsConfig,
        clock: Callable[[], datetime] = utcnow,
        idle_timeout: timedelta = SESSION_IDLE_TIMEOUT,
    ):
        self._env = environment
        self._config = config
        self._clock = clock
        self._idle_timeout = idle_timeout
        self.current: Optional[SessionInfo] = None

    async def _stored_or_new(self, key: str, factory: Callable[[], str]) -> str:
        """Read a durable id, creating and persisting it on first use."""
        try:
            value = await self._env.storage.get(key)
            if value:
                return value
            value = factory()
            await self._env.storage.set(key, value)
            return value
        except Exception:
            logger.warning("Storage unavailable for %s, using an ephemeral value", key, exc_info=True)
            return factory()

    async def start_session(self, minimal: bool = False) -> SessionInfo:
        now = self._clock()
        user_id = self.current.user_id if self.current else self._config.user_id
        if minimal:
            anonymous_id = f"anon_{uuid.uuid4().hex}"
            device_id = MINIMAL_DEVICE_ID
        else:
            anonymous_id = self._config.anonymous_id or await self._stored_or_new(
                ANONYMOUS_ID_KEY, lambda: f"anon_{uuid.uuid4().hex}"
            )
            salt = await self._stored_or_new(DEVICE_SALT_KEY, lambda: secrets.token_hex(16))
            device_id = derive_device_id(self._env, salt)

        self.current = SessionInfo(
            session_id=_new_session_id(),
            user_id=user_id,
            anonymous_id=anonymous_id,
            device_id=device_id,
            started_at=now,
            last_activity=now,
            referrer=self._env.referrer or None,
            utm=utm_params(self._env.url),
            minimal=minimal,
        )
        logger.info("Session started session_id=%s minimal=%s", self.current.session_id, minimal)
        return self.current

    def _rotate_if_idle(self, now: datetime) -> SessionInfo:
        session = self.current
        if now - session.last_activity <= self._idle_timeout:
            return session
        rotated = session.model_copy(update={
            "session_id": _new_session_id(),
            "started_at": now,
            "last_activity": now,
            "page_views": 0,
            "event_count": 0,
            "referrer": self._env.referrer or None,
            "utm": utm_params(self._env.url),
        })
        logger.info(
            "Session idle for more than %s, rotated %s -> %s",
            self._idle_timeout, session.session_id, rotated.session_id,
        )
        self.current = rotated
        return rotated

    def touch(self, page_view: bool = False) -> SessionInfo:
        """Record activity: bumps event_count (and page_views) and last_activity."""
        if self.current is None:
            raise RuntimeError("touch() called before start_session()")
        now = self._clock()
        session = self._rotate_if_idle(now)
        self.current = session.model_copy(update={
            "last_activity": max(now, session.last_activity),
            "event_count": session.event_count + 1,
            "page_views": session.page_views + (1 if page_view else 0),
        })
        return self.current

    def set_user_id(self, user_id: str) -> None:
        if self.current is not None:
            self.current = self.current.model_copy(update={"user_id": user_id})
