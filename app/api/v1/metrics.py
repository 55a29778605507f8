from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('generation_queue_depth', 'Number of jobs in QUEUED state')
JOBS_INFLIGHT = Gauge('generation_jobs_inflight', 'Number of jobs processing or streaming')

JOBS_ENQUEUED = Counter('generation_jobs_enqueued_total', 'Total jobs enqueued')
JOB_CLAIMS = Counter('generation_job_claims_total', 'Total jobs claimed by a dispatcher')
JOB_START_DELAY = Histogram('generation_job_start_delay_seconds', 'Time from available_at to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])
JOB_DURATION = Histogram('generation_job_duration_seconds', 'Time from claim to completion', buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0])

JOB_COMPLETE_TOTAL = Counter('generation_job_complete_total', 'Jobs reaching a terminal state', ['result'])  # completed|cancelled|failed
JOB_FAILURES = Counter('generation_job_failures_total', 'Total job failures', ['type'])  # retryable|final

FRAMES_EMITTED = Counter('generation_frames_emitted_total', 'Frames published to live streams', ['type'])
FRAME_DECODE_ERRORS = Counter('generation_frame_decode_errors_total', 'Upstream frame lines dropped as unparseable')

ENRICHMENT_FAILURES = Counter('generation_enrichment_failures_total', 'Context lookups that failed and were skipped')
NOTIFICATIONS_PUBLISHED = Counter('generation_notifications_published_total', 'Notifications handed to the publisher sink', ['type'])

REAPER_RECOVERED_JOBS = Counter(
    "reaper_recovered_jobs_total",
    "Total number of stale jobs recovered by the reaper"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
