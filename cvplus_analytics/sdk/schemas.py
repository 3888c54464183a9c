"""
schemas.py — client SDK Pydantic v2 data contracts.

Defines:
  - EventType, EventSource, ConsentCategory, ConsentMechanism  enums
  - ConsentRecord     (approved processing purposes for one identity)
  - SessionInfo       (ephemeral session + stable device identity + counters)
  - EventContext      (browser / device / OS / location / app / UTM block)
  - PrivacyMetadata   (consent snapshot frozen at build time)
  - EventProperties   (tagged union of known property shapes + open extension map)
  - AnalyticsEvent    (the unit that flows through queue → transport → ingestion)
  - ValidationResult, PerEventResult, BatchRequest, BatchResponse

PrivacyMetadata is frozen: an event's consent snapshot reflects the consent state at
creation time and is never rewritten by later consent changes.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    # Basic tracking events
    track = "track"
    page = "page"
    identify = "identify"
    group = "group"
    screen = "screen"

    # Content events rolled up by the aggregation engine
    view = "view"
    download = "download"
    social_share = "social_share"
    contact_form_submit = "contact_form_submit"
    calendar_booking = "calendar_booking"
    section_view = "section_view"
    feature_interaction = "feature_interaction"

    # Product events
    cv_generated = "cv_generated"
    cv_downloaded = "cv_downloaded"
    cv_shared = "cv_shared"
    application_submitted = "application_submitted"
    outcome_reported = "outcome_reported"
    feature_used = "feature_used"


class EventSource(str, Enum):
    web = "web"
    mobile = "mobile"
    api = "api"
    server = "server"
    worker = "worker"


class ConsentCategory(str, Enum):
    necessary = "necessary"
    analytics = "analytics"
    marketing = "marketing"
    personalization = "personalization"
    functional = "functional"


class ConsentMechanism(str, Enum):
    explicit = "explicit"
    implied = "implied"
    legitimate_interest = "legitimate_interest"
    vital_interest = "vital_interest"
    contract = "contract"
    legal_obligation = "legal_obligation"


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------

def default_consent_map() -> Dict[ConsentCategory, bool]:
    """necessary=True, everything else denied until the user says otherwise."""
    return {category: category is ConsentCategory.necessary for category in ConsentCategory}


class ConsentRecord(BaseModel):
    """
    Approved processing purposes for a user or anonymous identity.

    `necessary` is always True: the validator forces it back on whatever the input says,
    so no code path can produce a record that withdraws it.
    Withdrawal is a state transition (withdrawn=True + withdrawn_at), never a delete.
    """
    model_config = ConfigDict(extra="forbid")

    consent_id: str = Field(default_factory=lambda: f"consent_{uuid.uuid4().hex}")
    identity: str = Field(..., min_length=1, description="user_id, or anonymous_id before identify()")
    is_anonymous: bool = True
    categories: Dict[ConsentCategory, bool] = Field(default_factory=default_consent_map)
    mechanism: ConsentMechanism = ConsentMechanism.explicit
    recorded_at: datetime = Field(default_factory=utcnow)
    withdrawn: bool = False
    withdrawn_at: Optional[datetime] = None
    version: str = "1.0"

    @model_validator(mode="after")
    def _necessary_always_granted(self) -> "ConsentRecord":
        merged = default_consent_map()
        merged.update(self.categories)
        merged[ConsentCategory.necessary] = True
        self.categories = merged
        return self

    def has(self, category: ConsentCategory) -> bool:
        return self.categories.get(category, False)

    def approved(self) -> List[ConsentCategory]:
        """Approved categories in enum declaration order."""
        return [c for c in ConsentCategory if self.categories.get(c, False)]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class SessionInfo(BaseModel):
    """
    One browsing session.

    session_id is ephemeral (new per session); device_id is a salted hash that is stable
    across sessions on the same device and cannot be reversed to the inputs it was
    derived from. minimal=True marks a necessary-only session with no device identity.
    """
    model_config = ConfigDict(extra="forbid")

    session_id: str
    user_id: Optional[str] = None
    anonymous_id: str
    device_id: str
    started_at: datetime
    last_activity: datetime
    page_views: int = 0
    event_count: int = 0
    referrer: Optional[str] = None
    utm: Dict[str, str] = Field(default_factory=dict)
    minimal: bool = False

    @model_validator(mode="after")
    def _activity_not_before_start(self) -> "SessionInfo":
        if self.last_activity < self.started_at:
            raise ValueError("last_activity cannot be earlier than started_at")
        return self

    @property
    def duration_seconds(self) -> float:
        return (self.last_activity - self.started_at).total_seconds()


# ---------------------------------------------------------------------------
# Event context
# ---------------------------------------------------------------------------

class BrowserInfo(BaseModel):
    name: str = "unknown"
    version: str = "unknown"
    language: Optional[str] = None
    cookie_enabled: bool = True
    do_not_track: bool = False


class DeviceInfo(BaseModel):
    type: Literal["desktop", "tablet", "mobile", "unknown"] = "unknown"
    screen_width: int = 0
    screen_height: int = 0
    pixel_ratio: float = 1.0


class OSInfo(BaseModel):
    name: str = "unknown"
    version: str = "unknown"
    platform: Optional[str] = None


class LocationInfo(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None


class AppInfo(BaseModel):
    name: str
    version: str
    build: Optional[str] = None
    environment: str = "development"


class UTMParams(BaseModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


class EventContext(BaseModel):
    """Derived by the EventBuilder from the environment provider, never user-supplied."""
    user_agent: str = ""
    browser: BrowserInfo = Field(default_factory=BrowserInfo)
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    os: OSInfo = Field(default_factory=OSInfo)
    location: LocationInfo = Field(default_factory=LocationInfo)
    app: AppInfo
    url: Optional[str] = None
    referrer: Optional[str] = None
    utm: UTMParams = Field(default_factory=UTMParams)
    session_started_at: Optional[datetime] = None
    session_duration: float = 0.0
    ip: Optional[str] = None


# ---------------------------------------------------------------------------
# Privacy snapshot
# ---------------------------------------------------------------------------

class PrivacyMetadata(BaseModel):
    """Consent snapshot taken when the event was built. Immutable."""
    model_config = ConfigDict(frozen=True)

    consent_given: bool
    consent_categories: List[ConsentCategory]
    consent_timestamp: datetime
    anonymized: bool
    retention_policy: Literal["standard", "minimal", "extended"] = "standard"
    retention_expires_at: datetime
    gdpr_applicable: bool = True
    ccpa_applicable: bool = False
    processing_purpose: List[str] = Field(default_factory=lambda: ["analytics", "product_improvement"])


# ---------------------------------------------------------------------------
# Event properties — tagged union + open extension map
# ---------------------------------------------------------------------------

class PageProperties(BaseModel):
    kind: Literal["page"] = "page"
    title: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    referrer: Optional[str] = None
    search: Optional[str] = None
    category: Optional[str] = None
    name: Optional[str] = None


class ActionProperties(BaseModel):
    kind: Literal["action"] = "action"
    category: str
    label: Optional[str] = None
    value: Optional[float] = None
    duration: Optional[float] = Field(default=None, description="Action duration in milliseconds")


class CVProperties(BaseModel):
    kind: Literal["cv"] = "cv"
    template_id: Optional[str] = None
    generation_step: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    export_format: Optional[str] = None
    processing_time: Optional[float] = None
    feature: Optional[str] = None
    version: Optional[str] = None


class PremiumProperties(BaseModel):
    kind: Literal["premium"] = "premium"
    feature_id: str
    tier: Literal["free", "premium", "enterprise"]
    usage: float = 0
    limit: Optional[float] = None
    billing_cycle: Optional[str] = None


class ErrorProperties(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    code: Optional[str] = None
    stack: Optional[str] = None
    component: Optional[str] = None
    severity: Literal["low", "medium", "high", "critical"] = "medium"


class PerformanceProperties(BaseModel):
    kind: Literal["performance"] = "performance"
    load_time: float
    render_time: Optional[float] = None
    interaction_time: Optional[float] = None
    memory_usage: Optional[float] = None
    network_latency: Optional[float] = None


EventDetail = Annotated[
    Union[
        PageProperties,
        ActionProperties,
        CVProperties,
        PremiumProperties,
        ErrorProperties,
        PerformanceProperties,
    ],
    Field(discriminator="kind"),
]

_DETAIL_ADAPTER = TypeAdapter(EventDetail)
DETAIL_KINDS = ("page", "action", "cv", "premium", "error", "performance")


class EventProperties(BaseModel):
    """
    details: known shapes, at most one per kind.
    extra:   open extension map for everything else (and for malformed known-kind values,
             which are kept verbatim so validation can reject them instead of losing them).
    issues:  parse problems found while building; non-empty means the event is invalid.
    """
    details: List[EventDetail] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)
    issues: List[str] = Field(default_factory=list)

    def get(self, kind: str) -> Optional[BaseModel]:
        for detail in self.details:
            if detail.kind == kind:
                return detail
        return None

    @classmethod
    def from_raw(cls, raw: Any) -> "EventProperties":
        """
        Tolerant parse of a caller-supplied property bag. Never raises.

        Top-level keys named after a detail kind are parsed into that shape; all other
        keys go to `extra`.
        """
        if raw is None:
            return cls()
        if isinstance(raw, EventProperties):
            return raw
        if not isinstance(raw, Mapping):
            return cls(
                extra={"_raw": raw},
                issues=[f"properties: expected a mapping, got {type(raw).__name__}"],
            )

        details: List[BaseModel] = []
        extra: Dict[str, Any] = {}
        issues: List[str] = []
        for key, value in raw.items():
            if key not in DETAIL_KINDS:
                extra[str(key)] = value
                continue
            if isinstance(value, BaseModel):
                value = value.model_dump()
            if not isinstance(value, Mapping):
                extra[key] = value
                issues.append(f"properties.{key}: expected an object, got {type(value).__name__}")
                continue
            try:
                details.append(_DETAIL_ADAPTER.validate_python({**value, "kind": key}))
            except ValidationError as exc:
                extra[key] = dict(value)
                for err in exc.errors():
                    loc = ".".join(str(part) for part in err["loc"])
                    issues.append(f"properties.{key}.{loc}: {err['msg']}")
        return cls(details=details, extra=extra, issues=issues)


# ---------------------------------------------------------------------------
# AnalyticsEvent
# ---------------------------------------------------------------------------

class AnalyticsEvent(BaseModel):
    """
    A fully-contextualised event. Built by EventBuilder; after that only the
    processing-state flags (validated / processed / enriched) ever change, and only
    through model_copy so the queued instance is replaced rather than mutated.
    """
    model_config = ConfigDict(extra="forbid")

    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    timestamp: Optional[datetime] = None
    user_id: Optional[str] = None
    session_id: str = ""
    device_id: str = ""

    event_name: str = ""
    event_type: EventType = EventType.track
    properties: EventProperties = Field(default_factory=EventProperties)

    context: Optional[EventContext] = None
    privacy: Optional[PrivacyMetadata] = None

    version: str = "1.0.0"
    source: EventSource = EventSource.web
    api_version: str = "v1"

    validated: bool = False
    processed: bool = False
    enriched: bool = False


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    enriched: Optional[AnalyticsEvent] = None


class PerEventResult(BaseModel):
    event_id: str
    success: bool
    timestamp: datetime = Field(default_factory=utcnow)
    processing_time_ms: float = 0.0
    error: Optional[str] = None
    retryable: bool = Field(
        default=False,
        description="True for transport-level failures the queue should retry; False for events the server rejected.",
    )


# ---------------------------------------------------------------------------
# Wire contract for POST /analytics/batch
# ---------------------------------------------------------------------------

class BatchRequest(BaseModel):
    """
    Batch-level metadata (count, timestamp, session/user) sits beside the events so the
    backend can short-circuit an empty batch without touching per-event payloads.
    """
    events: List[AnalyticsEvent]
    count: int
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class BatchResponse(BaseModel):
    accepted: int = 0
    rejected: int = 0
    events: List[PerEventResult] = Field(default_factory=list)


__all__ = [
    "ActionProperties",
    "AnalyticsEvent",
    "AppInfo",
    "BatchRequest",
    "BatchResponse",
    "BrowserInfo",
    "CVProperties",
    "ConsentCategory",
    "ConsentMechanism",
    "ConsentRecord",
    "DeviceInfo",
    "ErrorProperties",
    "EventContext",
    "EventProperties",
    "EventSource",
    "EventType",
    "LocationInfo",
    "OSInfo",
    "PageProperties",
    "PerEventResult",
    "PerformanceProperties",
    "PremiumProperties",
    "PrivacyMetadata",
    "SessionInfo",
    "UTMParams",
    "ValidationResult",
    "default_consent_map",
    "utcnow",
]
