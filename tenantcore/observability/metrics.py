"""
Prometheus metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

authz_decisions_counter = Counter(
    "authz_decisions_total", "Authorization gate decisions", ["action", "result"]
)
billing_events_counter = Counter(
    "billing_events_total", "Billing events received", ["type", "outcome"]
)
subscription_transitions_counter = Counter(
    "subscription_transitions_total", "Subscription state transitions", ["from_status", "to_status"]
)
invitations_counter = Counter(
    "invitations_total", "Invitation lifecycle events", ["outcome"]
)
notifications_counter = Counter(
    "notifications_total", "Outbound notifications", ["kind", "status"]
)

metrics_router = APIRouter()


@metrics_router.get("")
async def get_metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
