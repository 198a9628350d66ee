"""
Prometheus metrics for the ingest pipeline and workers.

Metrics live in the default registry; the worker exposes them with
``prometheus_client.start_http_server`` when a metrics port is configured.
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Upload Metrics
# =============================================================================

UPLOAD_URLS_ISSUED_TOTAL = Counter(
    "reelhouse_upload_urls_issued_total",
    "Presigned upload URLs issued",
)

UPLOADS_CONFIRMED_TOTAL = Counter(
    "reelhouse_uploads_confirmed_total",
    "Upload confirmations",
    ["result"],  # queued, rejected
)

# =============================================================================
# Encoding Metrics
# =============================================================================

ENCODING_JOBS_TOTAL = Counter(
    "reelhouse_encoding_jobs_total",
    "Whole-video encoding jobs processed",
    ["status"],  # completed, rejected, skipped, cancelled, errored
)

ENCODING_JOB_DURATION_SECONDS = Histogram(
    "reelhouse_encoding_job_duration_seconds",
    "Wall time spent encoding all qualities of a video",
    buckets=[30, 60, 120, 300, 600, 1200, 1800, 3600, 7200],
)

QUALITY_OUTCOMES_TOTAL = Counter(
    "reelhouse_quality_outcomes_total",
    "Per-quality encode outcomes",
    ["quality", "outcome"],  # ready, failed
)

# =============================================================================
# Retry Metrics
# =============================================================================

RETRY_JOBS_QUEUED_TOTAL = Counter(
    "reelhouse_retry_jobs_queued_total",
    "Quality retry jobs submitted",
    ["quality"],
)

RETRIES_EXHAUSTED_TOTAL = Counter(
    "reelhouse_retries_exhausted_total",
    "Qualities that used their whole retry budget",
    ["quality"],
)

VIDEO_STATUS_TRANSITIONS_TOTAL = Counter(
    "reelhouse_video_status_transitions_total",
    "Video status changes applied by reconciliation",
    ["status"],
)

# =============================================================================
# Cleanup Metrics
# =============================================================================

CLEANUP_DELETIONS_TOTAL = Counter(
    "reelhouse_cleanup_deletions_total",
    "Videos permanently removed by cleanup sweeps",
    ["sweep"],  # trash, orphans
)

CLEANUP_FAILURES_TOTAL = Counter(
    "reelhouse_cleanup_failures_total",
    "Videos a cleanup sweep failed to remove",
    ["sweep"],
)

STALE_QUALITIES_TOTAL = Counter(
    "reelhouse_stale_qualities_total",
    "Qualities found stuck in encoding by the stale sweep",
)

# =============================================================================
# Queue Metrics
# =============================================================================

QUEUE_DEPTH = Gauge(
    "reelhouse_queue_depth",
    "Jobs per queue and state",
    ["queue", "state"],
)


def record_queue_depth(queue_name: str, counts: dict) -> None:
    for state, count in counts.items():
        QUEUE_DEPTH.labels(queue=queue_name, state=state).set(count)
