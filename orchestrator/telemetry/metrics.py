"""Prometheus metrics definitions."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

incidents_started_total = Counter(
    "incidents_started_total",
    "Incidents started (new runs, not attaches)",
)

incidents_active = Gauge(
    "incidents_active",
    "Incident event loops currently running",
)

incident_events_total = Counter(
    "incident_events_total",
    "Events applied to incident state machines",
    labelnames=["kind"],
)

escalations_total = Counter(
    "incident_escalations_total",
    "Escalation level increases",
)

stale_timer_firings_total = Counter(
    "incident_stale_timer_firings_total",
    "Escalation timer firings discarded as stale",
)

notifications_total = Counter(
    "incident_notifications_total",
    "Notification dispatch outcomes",
    labelnames=["outcome"],
)

commands_enqueued_total = Counter(
    "incident_commands_enqueued_total",
    "Commands accepted and pushed onto the command stream",
    labelnames=["kind"],
)


def get_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
