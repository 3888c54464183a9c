"""
client.py — AnalyticsSDK, the client-side entry point.

Wires the pipeline together from explicitly injected collaborators:

    ConsentStore + SessionTracker → EventBuilder → validate_event → EventQueue → EventTransport

There is no module-level instance. Construct one per host (or per test) and pass it
around. Construction fails fast with ConfigurationError on a bad configuration; every
tracking call afterwards absorbs its own errors and logs them.

Consent gating:
  - track / identify / track_error / track_product_event need analytics consent
  - page() is a necessary-only page view and is always captured
  - the consent-change audit event is necessary-only, so withdrawing analytics never blocks it
"""
import logging
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from cvplus_analytics.config import AnalyticsConfig
from cvplus_analytics.errors import ConfigurationError
from cvplus_analytics.sdk.builder import EventBuilder
from cvplus_analytics.sdk.consent import ConsentStore
from cvplus_analytics.sdk.environment import EnvironmentProvider, url_path, url_search
from cvplus_analytics.sdk.event_queue import EventQueue
from cvplus_analytics.sdk.scheduler import AsyncioScheduler, Scheduler
from cvplus_analytics.sdk.schemas import (
    ConsentCategory,
    ConsentMechanism,
    ConsentRecord,
    EventType,
    utcnow,
)
from cvplus_analytics.sdk.session import SessionTracker
from cvplus_analytics.sdk.transport import BatchSender, EventTransport
from cvplus_analytics.sdk.validator import validate_event

logger = logging.getLogger(__name__)

PENDING_IDENTITY = "pending"
ALLOWED_MINIMAL_TRAITS = ("plan", "industry", "role")

PAGE_VIEW_EVENT = "page_view"
IDENTIFY_EVENT = "user_identified"
CONSENT_EVENT = "consent_updated"
ERROR_EVENT = "error_occurred"


def extract_feature(event_name: str) -> str:
    """Product area an event belongs to, from its name prefix."""
    if event_name.startswith("cv_"):
        return "cv_generation"
    if event_name.startswith("premium_"):
        return "premium_features"
    if event_name.startswith("user_"):
        return "user_management"
    return "general"


def filter_traits(traits: Mapping[str, Any], full: bool) -> Dict[str, Any]:
    if full:
        return dict(traits)
    return {k: v for k, v in traits.items() if k in ALLOWED_MINIMAL_TRAITS}


class AnalyticsSDK:
    def __init__(
        self,
        config: Union[AnalyticsConfig, Mapping[str, Any]],
        environment: EnvironmentProvider,
        transport: Optional[BatchSender] = None,
        scheduler: Optional[Scheduler] = None,
        clock=utcnow,
    ):
        if not isinstance(config, AnalyticsConfig):
            try:
                config = AnalyticsConfig.model_validate(config)
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid analytics configuration: {exc}") from exc
        if not config.api_key.strip():
            raise ConfigurationError("api_key is required")
        if not config.transport.api_key:
            config = config.model_copy(
                update={"transport": config.transport.model_copy(update={"api_key": config.api_key})}
            )

        self.config = config
        self._env = environment
        self._clock = clock
        self._owns_scheduler = scheduler is None
        self._owns_transport = transport is None

        self.consent = ConsentStore(
            environment.storage,
            config.privacy,
            do_not_track=environment.do_not_track,
            clock=clock,
        )
        self.session = SessionTracker(environment, config, clock=clock)
        self.builder = EventBuilder(
            environment,
            config,
            session_provider=lambda: self.session.current,
            consent_provider=self._current_consent,
            clock=clock,
        )
        self._scheduler = scheduler or AsyncioScheduler()
        self._transport = transport or EventTransport(config.transport)
        self.queue = EventQueue(
            config.queue,
            self._transport,
            self._scheduler,
            storage=environment.storage if config.queue.offline_storage else None,
            retry=config.transport.retry_config,
            send_timeout=config.transport.timeout + 1.0,
        )

        self.initialized = False
        self.minimal = False
        self.invalid_events = 0

    # ------------------------------------------------------------------
    # Identity and consent helpers
    # ------------------------------------------------------------------

    @property
    def identity(self) -> str:
        session = self.session.current
        if session is not None:
            return session.user_id or session.anonymous_id
        return self.config.user_id or self.config.anonymous_id or PENDING_IDENTITY

    def _current_consent(self) -> ConsentRecord:
        return self.consent.get_consent(self.identity)

    def has_consent(self, category: ConsentCategory) -> bool:
        return self.consent.has_category(self.identity, category)

    def _analytics_allowed(self) -> bool:
        return self._current_consent().has(ConsentCategory.analytics)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load consent, start the session, restore offline events and start the periodic
        flush. Unreadable consent storage, or required consent that was never granted,
        puts the SDK in minimal mode instead of failing.
        """
        if self.initialized:
            return

        provisional = self.identity
        record = await self.consent.load(provisional)
        self.minimal = self.consent.degraded or (
            self.config.privacy.consent_required and not record.has(ConsentCategory.analytics)
        )
        session = await self.session.start_session(minimal=self.minimal)
        identity = session.user_id or session.anonymous_id
        if identity != provisional:
            self.consent.rebind(provisional, identity, is_anonymous=session.user_id is None)

        if self.config.queue.offline_storage:
            await self.queue.restore_offline()
        self.queue.start()
        self.initialized = True
        logger.info(
            "Analytics SDK initialized session_id=%s minimal=%s environment=%s",
            session.session_id, self.minimal, self.config.environment,
        )

    async def shutdown(self) -> None:
        left = await self.queue.shutdown()
        if self._owns_scheduler and isinstance(self._scheduler, AsyncioScheduler):
            self._scheduler.cancel_all()
        if self._owns_transport and isinstance(self._transport, EventTransport):
            await self._transport.close()
        self.initialized = False
        logger.info("Analytics SDK shut down, %d events undelivered", left)

    async def flush(self) -> int:
        try:
            return await self.queue.flush()
        except Exception:
            logger.error("Flush failed", exc_info=True)
            return 0

    def status(self) -> Dict[str, Any]:
        session = self.session.current
        return {
            "initialized": self.initialized,
            "minimal": self.minimal,
            "analytics_consent": self.has_consent(ConsentCategory.analytics),
            "session_id": session.session_id if session else None,
            "queue_size": self.queue.size(),
            "queue": self.queue.stats(),
            "invalid_events": self.invalid_events,
            "environment": self.config.environment,
            "transport": "configured" if self.config.transport.api_key else "not_configured",
        }

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def _capture(
        self,
        name: str,
        event_type: EventType,
        properties: Any = None,
        necessary: bool = False,
        page_view: bool = False,
    ) -> Optional[str]:
        """Build, validate and enqueue one event. Returns its id, or None when not captured."""
        try:
            if not self.initialized:
                logger.warning("Analytics SDK not initialized; dropping %s", name)
                return None
            if not necessary and not self._analytics_allowed():
                logger.debug("Analytics consent not granted; skipping %s", name)
                return None

            self.session.touch(page_view=page_view)
            event = self.builder.build(name, event_type, properties)
            if self.config.validate_events:
                result = validate_event(event)
                if not result.valid:
                    self.invalid_events += 1
                    logger.warning("Dropping invalid event %s: %s", event.event_id, "; ".join(result.errors))
                    return None
                if result.warnings and self.config.debug:
                    logger.debug("Event %s warnings: %s", event.event_id, "; ".join(result.warnings))
                event = result.enriched
            self.queue.enqueue(event)
            return event.event_id
        except Exception:
            logger.error("Failed to capture %s", name, exc_info=True)
            return None

    def track(self, event_name: str, properties: Any = None) -> Optional[str]:
        return self._capture(event_name, EventType.track, properties)

    def page(
        self,
        category: Optional[str] = None,
        name: Optional[str] = None,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        try:
            props = dict(properties or {})
            page = {
                "title": self._env.title or None,
                "url": self._env.url,
                "path": url_path(self._env.url),
                "referrer": self._env.referrer or None,
                "search": url_search(self._env.url) or None,
                "category": category,
                "name": name,
            }
            if isinstance(props.get("page"), Mapping):
                page.update(props["page"])
            props["page"] = page
        except Exception:
            logger.error("Failed to assemble page view properties", exc_info=True)
            return None
        return self._capture(PAGE_VIEW_EVENT, EventType.page, props, necessary=True, page_view=True)

    def identify(self, user_id: str, traits: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        try:
            if not user_id:
                logger.warning("identify() called without a user id")
                return None
            previous = self.identity
            self.session.set_user_id(user_id)
            if previous != user_id:
                self.consent.rebind(previous, user_id)
            full = self.has_consent(ConsentCategory.personalization)
            props = {"traits": filter_traits(traits or {}, full)}
        except Exception:
            logger.error("Failed to identify user", exc_info=True)
            return None
        return self._capture(IDENTIFY_EVENT, EventType.identify, props)

    def track_product_event(self, event_name: str, properties: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        props = dict(properties or {})
        cv = props.get("cv")
        if cv is None or isinstance(cv, Mapping):
            cv = dict(cv or {})
            cv.setdefault("feature", extract_feature(event_name))
            cv.setdefault("version", "1.0.0" if self.config.environment == "production" else "dev")
            props["cv"] = cv
        return self.track(event_name, props)

    def track_error(
        self,
        error_type: str,
        error: Optional[BaseException] = None,
        component: Optional[str] = None,
        severity: str = "medium",
    ) -> Optional[str]:
        props = {
            "error": {
                "message": type(error).__name__ if error is not None else error_type,
                "code": error_type,
                "component": component,
                "severity": severity,
            }
        }
        return self._capture(ERROR_EVENT, EventType.track, props)

    async def update_consent(
        self,
        categories: Mapping[Union[ConsentCategory, str], bool],
        mechanism: ConsentMechanism = ConsentMechanism.explicit,
    ) -> ConsentRecord:
        """
        Apply a consent change. The new record is in place before this returns, so the
        next event built sees it. Events already queued keep the snapshot they were built with.
        """
        previous = self._current_consent()
        record = await self.consent.set_consent(self.identity, categories, mechanism=mechanism)

        if self.initialized and self.minimal and record.has(ConsentCategory.analytics) and not self.consent.degraded:
            old_identity = self.identity
            session = await self.session.start_session(minimal=False)
            self.consent.rebind(old_identity, session.user_id or session.anonymous_id, is_anonymous=session.user_id is None)
            self.minimal = False
            logger.info("Analytics consent granted; left minimal mode session_id=%s", session.session_id)

        revoked = [c.value for c in ConsentCategory if previous.has(c) and not record.has(c)]
        self._capture(
            CONSENT_EVENT,
            EventType.track,
            {
                "consent_categories": [c.value for c in record.approved()],
                "withdrawn_categories": revoked,
                "mechanism": record.mechanism.value,
            },
            necessary=True,
        )
        return record

