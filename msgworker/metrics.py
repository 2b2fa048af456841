from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_ACTIVE = Gauge(
    "msgworker_sessions",
    "Number of sessions currently tracked by the registry",
)
SESSION_START_TOTAL = Counter(
    "msgworker_session_start_total",
    "Start-session requests grouped by outcome",
    labelnames=("result",),
)
SEND_TOTAL = Counter(
    "msgworker_send_total",
    "Send-message requests grouped by outcome",
    labelnames=("result",),
)
TEARDOWN_TOTAL = Counter(
    "msgworker_teardown_total",
    "Sessions torn down, grouped by trigger",
    labelnames=("reason",),
)
AUTH_FAILURE_TOTAL = Counter(
    "msgworker_auth_failure_total",
    "Authentication failures reported by messaging clients",
)
EVENT_ERRORS = Counter(
    "msgworker_events_errors_total",
    "Session errors grouped by category",
    labelnames=("type",),
)

__all__ = [
    "AUTH_FAILURE_TOTAL",
    "EVENT_ERRORS",
    "SEND_TOTAL",
    "SESSIONS_ACTIVE",
    "SESSION_START_TOTAL",
    "TEARDOWN_TOTAL",
]
