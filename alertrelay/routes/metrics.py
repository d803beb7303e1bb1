"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'alertrelay_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'alertrelay_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Rule Engine Metrics
# ============================================

events_received = Counter(
    'alertrelay_events_received_total',
    'Signal events received',
    ['trigger_type']
)

rule_evaluations = Counter(
    'alertrelay_rule_evaluations_total',
    'Rule evaluations by outcome (matched, counted, suppressed, filtered)',
    ['outcome']
)

action_outcomes = Counter(
    'alertrelay_action_outcomes_total',
    'Executed rule actions',
    ['action_type', 'result']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_attempts = Counter(
    'alertrelay_webhook_attempts_total',
    'Webhook HTTP attempts',
    ['result']
)

webhook_deliveries_terminal = Counter(
    'alertrelay_webhook_deliveries_terminal_total',
    'Webhook deliveries reaching a terminal status',
    ['status']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_event_received(trigger_type: str):
    events_received.labels(trigger_type=trigger_type).inc()


def track_rule_outcome(outcome: str):
    rule_evaluations.labels(outcome=outcome).inc()


def track_action_outcome(action_type: str, success: bool):
    action_outcomes.labels(
        action_type=action_type,
        result="success" if success else "failure"
    ).inc()


def track_webhook_attempt(result: str):
    """Record one webhook HTTP attempt (success or error)."""
    webhook_attempts.labels(result=result).inc()


def track_webhook_terminal(status: str):
    """Record a delivery becoming delivered or failed."""
    webhook_deliveries_terminal.labels(status=status).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
