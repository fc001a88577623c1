"""
Middleware for the segment criteria API.

- Tracing ids (X-Correlation-ID / X-Request-ID) bound per request and
  injected into log records
- The editing session key that scopes the cached field catalog
"""

from .correlation import CorrelationIdMiddleware, CorrelationLogFilter, editing_session_key, tracing_headers

__all__ = [
    "CorrelationIdMiddleware",
    "CorrelationLogFilter",
    "editing_session_key",
    "tracing_headers",
]
