"""
errors.py — exception taxonomy for the analytics pipeline.

Only ConfigurationError is meant to reach the host application. Every other error is
raised at a component boundary and absorbed (logged, retried, or counted) by the caller:

  TransportError         EventQueue retries the batch with backoff
  ConsentStorageError    ConsentStore falls back to necessary-only (minimal mode)
  ConcurrentUpdateError  RealtimeCounter logs and gives up (best-effort path)
"""
from typing import Optional


class AnalyticsError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(AnalyticsError):
    """Invalid SDK or service configuration. Fatal, surfaced to the caller."""


class TransportError(AnalyticsError):
    """A whole batch failed to reach the ingestion endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConsentStorageError(AnalyticsError):
    """The durable consent key could not be read or written."""


class ConcurrentUpdateError(AnalyticsError):
    """Optimistic compare-and-set kept losing to concurrent writers."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Gave up updating {key!r} after {attempts} conflicting attempts")
        self.key = key
        self.attempts = attempts
