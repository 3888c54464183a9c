"""
Event validator — structural checks run before an event may be enqueued.

Collects every violation in a single pass so a dropped event's log line lists all of
its problems at once.

Hard requirements (any failure → valid=False):
  1. event_name          non-empty, at most 255 characters
  2. session_id          non-empty
  3. timestamp           present
  4. privacy             present (consent snapshot taken at build time)
  5. properties.issues   empty (malformed known-kind properties carried from the builder)

Soft checks (warnings only):
  - event_name not snake_case
  - device_id missing

On success `enriched` is a copy with validated=True and enriched=True that replaces the
original before enqueue. The original object is never mutated.
"""
from __future__ import annotations

import re

from cvplus_analytics.sdk.schemas import AnalyticsEvent, ValidationResult

_MAX_EVENT_NAME = 255
_SNAKE_CASE = re.compile(r"^[a-z0-9]+(?:_[a-z0-9]+)*$")


def validate_event(event: AnalyticsEvent) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    # ---- 1. Event name ----------------------------------------------------
    name = (event.event_name or "").strip()
    if not name:
        errors.append("Event name is required")
    elif len(name) > _MAX_EVENT_NAME:
        errors.append(f"Event name exceeds {_MAX_EVENT_NAME} characters")
    elif not _SNAKE_CASE.match(name):
        warnings.append(f"Event name {name!r} is not snake_case")

    # ---- 2. Session -------------------------------------------------------
    if not (event.session_id or "").strip():
        errors.append("Session ID is required")

    # ---- 3. Timestamp -----------------------------------------------------
    if event.timestamp is None:
        errors.append("Timestamp is required")

    # ---- 4. Privacy snapshot ----------------------------------------------
    if event.privacy is None:
        errors.append("Privacy metadata is required")

    # ---- 5. Properties carried from the builder ---------------------------
    errors.extend(event.properties.issues)

    if not event.device_id:
        warnings.append("Device ID is missing")

    if errors:
        return ValidationResult(valid=False, errors=errors, warnings=warnings)

    enriched = event.model_copy(update={"validated": True, "enriched": True})
    return ValidationResult(valid=True, errors=[], warnings=warnings, enriched=enriched)
