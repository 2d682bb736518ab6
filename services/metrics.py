"""
Prometheus Metrics Module
Version: 1.1.0

Provides pipeline metrics for monitoring and alerting.

Usage:
    from services.metrics import record_sync_finished, SYNC_MESSAGES_TOTAL

    SYNC_MESSAGES_TOTAL.labels(outcome="imported").inc()
    record_sync_finished("completed", duration_seconds=12.4)
"""
from prometheus_client import Counter, Histogram, Gauge, Info, REGISTRY
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response


# =============================================================================
# APPLICATION INFO
# =============================================================================

APP_INFO = Info(
    'intake_app',
    'Application information'
)


# =============================================================================
# REQUEST METRICS
# =============================================================================

REQUEST_DURATION = Histogram(
    'intake_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint', 'status_code'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)


# =============================================================================
# SYNC METRICS
# =============================================================================

ACTIVE_SYNCS = Gauge(
    'intake_active_syncs',
    'Number of sync sessions currently running in this process'
)

SYNC_SESSIONS_TOTAL = Counter(
    'intake_sync_sessions_total',
    'Finished sync sessions',
    ['status']  # completed / failed / cancelled
)

SYNC_DURATION = Histogram(
    'intake_sync_duration_seconds',
    'Wall time of a sync session',
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0]
)

SYNC_MESSAGES_TOTAL = Counter(
    'intake_sync_messages_total',
    'Messages seen by the sync pipeline',
    ['outcome']  # imported / duplicate / error
)

BATCH_DURATION = Histogram(
    'intake_batch_duration_seconds',
    'Batch processing duration',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0]
)

SOURCE_PAGES_TOTAL = Counter(
    'intake_source_pages_total',
    'Pages fetched from the message source',
    ['status']
)


# =============================================================================
# EXTRACTION / CLASSIFICATION METRICS
# =============================================================================

EXTRACTIONS_TOTAL = Counter(
    'intake_extractions_total',
    'Extraction engine runs',
    ['urgency', 'fallback']
)

CLASSIFICATIONS_TOTAL = Counter(
    'intake_classifications_total',
    'Emergency classifier verdicts',
    ['severity', 'fallback']
)

ROUTING_DECISIONS_TOTAL = Counter(
    'intake_routing_decisions_total',
    'Emergency routing outcomes',
    ['status']  # routed / no_technician
)


# =============================================================================
# CIRCUIT BREAKER METRICS
# =============================================================================

BREAKER_TRANSITIONS = Counter(
    'intake_breaker_transitions_total',
    'Circuit breaker state transitions',
    ['circuit', 'to_state']
)

BREAKER_REJECTIONS = Counter(
    'intake_breaker_rejections_total',
    'Calls rejected by an open circuit',
    ['circuit']
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metrics."""
    APP_INFO.info({
        'version': version,
        'environment': environment
    })


def record_sync_finished(status: str, duration_seconds: float) -> None:
    """Record a terminal sync session."""
    SYNC_SESSIONS_TOTAL.labels(status=status).inc()
    SYNC_DURATION.observe(duration_seconds)


def record_batch(duration_seconds: float, imported: int, duplicates: int, errors: int) -> None:
    """Record one processed batch."""
    BATCH_DURATION.observe(duration_seconds)
    if imported:
        SYNC_MESSAGES_TOTAL.labels(outcome="imported").inc(imported)
    if duplicates:
        SYNC_MESSAGES_TOTAL.labels(outcome="duplicate").inc(duplicates)
    if errors:
        SYNC_MESSAGES_TOTAL.labels(outcome="error").inc(errors)


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )
