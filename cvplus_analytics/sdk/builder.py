"""
builder.py — Event Builder.

Pure assembly: given the environment, the current session and the current consent
record (all injected as providers), produce an AnalyticsEvent with a fresh event id and
timestamp, a derived context block and a frozen privacy snapshot. No I/O.

Malformed caller properties never raise here. EventProperties.from_raw keeps them and
records the problems in `properties.issues`, which the validator turns into errors.
"""
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from cvplus_analytics.config import AnalyticsConfig
from cvplus_analytics.sdk.environment import EnvironmentProvider, utm_params
from cvplus_analytics.sdk.schemas import (
    AnalyticsEvent,
    AppInfo,
    BrowserInfo,
    ConsentCategory,
    ConsentRecord,
    DeviceInfo,
    EventContext,
    EventProperties,
    EventSource,
    EventType,
    LocationInfo,
    OSInfo,
    PrivacyMetadata,
    SessionInfo,
    UTMParams,
    utcnow,
)

SDK_VERSION = "1.0.0"
EVENT_RETENTION = timedelta(days=90)

_BROWSER_PATTERNS = (
    # Order matters: Edge and Opera UAs also contain "Chrome"; Chrome UAs contain "Safari".
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"OPR/([\d.]+)")),
    ("Firefox", re.compile(r"Firefox/([\d.]+)")),
    ("Chrome", re.compile(r"Chrome/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
)


def parse_browser(user_agent: str) -> tuple[str, str]:
    for name, pattern in _BROWSER_PATTERNS:
        match = pattern.search(user_agent or "")
        if match:
            return name, match.group(1)
    return "unknown", "unknown"


def parse_device_type(user_agent: str) -> str:
    ua = user_agent or ""
    if not ua:
        return "unknown"
    if re.search(r"Tablet|iPad", ua, re.IGNORECASE):
        return "tablet"
    if re.search(r"Mobi|Android", ua, re.IGNORECASE):
        return "mobile"
    return "desktop"


def parse_os(user_agent: str) -> str:
    ua = user_agent or ""
    # iOS and Android UAs also mention "Mac OS X" / "Linux".
    if "iPhone" in ua or "iPad" in ua:
        return "iOS"
    if "Android" in ua:
        return "Android"
    if "Windows" in ua:
        return "Windows"
    if "Mac OS X" in ua:
        return "macOS"
    if "Linux" in ua:
        return "Linux"
    return "unknown"


class EventBuilder:
    def __init__(
        self,
        environment: EnvironmentProvider,
        config: AnalyticsConfig,
        session_provider: Callable[[], Optional[SessionInfo]],
        consent_provider: Callable[[], ConsentRecord],
        clock: Callable[[], datetime] = utcnow,
        source: EventSource = EventSource.web,
    ):
        self._env = environment
        self._config = config
        self._session = session_provider
        self._consent = consent_provider
        self._clock = clock
        self._source = source

    def build(self, name: str, event_type: EventType, properties: Any = None) -> AnalyticsEvent:
        now = self._clock()
        session = self._session()
        consent = self._consent()

        return AnalyticsEvent(
            timestamp=now,
            user_id=session.user_id if session else None,
            session_id=session.session_id if session else "",
            device_id=session.device_id if session else "",
            event_name=name or "",
            event_type=event_type,
            properties=EventProperties.from_raw(properties),
            context=self._build_context(now, session),
            privacy=self._privacy_snapshot(now, consent),
            version=SDK_VERSION,
            source=self._source,
        )

    def _build_context(self, now: datetime, session: Optional[SessionInfo]) -> EventContext:
        env = self._env
        browser_name, browser_version = parse_browser(env.user_agent)
        utm: Dict[str, str] = utm_params(env.url)
        return EventContext(
            user_agent=env.user_agent,
            browser=BrowserInfo(
                name=browser_name,
                version=browser_version,
                language=env.language,
                do_not_track=env.do_not_track,
            ),
            device=DeviceInfo(
                type=parse_device_type(env.user_agent),
                screen_width=env.screen_width,
                screen_height=env.screen_height,
                pixel_ratio=env.pixel_ratio,
            ),
            os=OSInfo(name=parse_os(env.user_agent)),
            # Client side only ever knows the timezone; geo enrichment happens at ingestion.
            location=LocationInfo(timezone=env.timezone),
            app=AppInfo(
                name=self._config.app_name,
                version=self._config.app_version,
                build=self._config.environment,
                environment=self._config.environment,
            ),
            url=env.url,
            referrer=env.referrer or None,
            utm=UTMParams(**utm),
            session_started_at=session.started_at if session else None,
            session_duration=(now - session.started_at).total_seconds() if session else 0.0,
        )

    def _privacy_snapshot(self, now: datetime, consent: ConsentRecord) -> PrivacyMetadata:
        analytics = consent.has(ConsentCategory.analytics)
        privacy = self._config.privacy
        return PrivacyMetadata(
            consent_given=analytics,
            consent_categories=consent.approved(),
            consent_timestamp=consent.recorded_at,
            anonymized=privacy.anonymize_ip or not analytics,
            retention_policy="standard" if analytics else "minimal",
            retention_expires_at=now + EVENT_RETENTION,
            gdpr_applicable=privacy.gdpr_enabled,
            ccpa_applicable=privacy.ccpa_enabled,
        )
