from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_ENQUEUED = Counter('relay_jobs_enqueued_total', 'Total posts added to the queue', ['platform'])
JOB_COMPLETIONS = Counter('relay_jobs_completed_total', 'Total posts published successfully', ['platform'])
JOB_FAILURES = Counter('relay_job_failures_total', 'Total failed publish attempts', ['platform', 'type'])  # type=error|auth|exception|max_retries
JOBS_PURGED = Counter('relay_jobs_purged_total', 'Total terminal posts removed by the retention sweep')

QUEUE_DEPTH = Gauge('relay_queue_depth', 'Number of posts in PENDING state')

TICK_DURATION = Histogram(
    'relay_dispatch_tick_seconds',
    'Time spent processing one dispatch tick',
    buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0],
)

TOKEN_REFRESHES = Counter(
    "relay_token_refresh_total",
    "Credential refresh attempts",
    ["platform", "result"]  # success | failed | unavailable
)

HANDSHAKES = Counter(
    "relay_oauth_handshakes_total",
    "OAuth handshakes by outcome",
    ["platform", "result"]  # started | completed | invalid_state | provider_error | exchange_failed
)


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
