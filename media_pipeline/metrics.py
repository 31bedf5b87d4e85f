"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server


# Stage workers
STAGE_JOB_TOTAL = Counter(
    "stage_job_total", "Total jobs finished by a stage worker", ["stage", "outcome"]
)
STAGE_JOB_LATENCY_SECONDS = Histogram(
    "stage_job_latency_seconds",
    "Time to run a single stage job",
    ["stage"],
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
)
STAGE_RETRY_TOTAL = Counter(
    "stage_retry_total", "Total job retries scheduled", ["stage", "classification"]
)
STAGE_RESCHEDULE_TOTAL = Counter(
    "stage_reschedule_total", "ProcessingCheck polls rescheduled while the remote file is not ready"
)
PROBLEM_JOB_TOTAL = Counter(
    "problem_job_total", "Total jobs moved to the problem-jobs sink", ["stage", "classification"]
)
QUEUE_DEPTH = Gauge(
    "queue_depth", "Jobs waiting or delayed per stage queue", ["stage"]
)

# Ledger
LEDGER_TRANSITION_TOTAL = Counter(
    "ledger_transition_total", "Transaction status changes", ["status"]
)
LEDGER_REJECTED_TOTAL = Counter(
    "ledger_rejected_total", "Ledger operations skipped (missing transaction or invalid transition)", ["operation"]
)
RECOVERY_REPLAY_TOTAL = Counter(
    "recovery_replay_total", "Transactions re-delivered by a recovery sweep", ["source", "result"]
)

# Delivery
DELIVERY_TOTAL = Counter(
    "delivery_total", "Delivery attempts by the result dispatcher", ["form", "result"]
)
PENDING_NOTIFICATION_TOTAL = Counter(
    "pending_notification_total", "Pending notification lifecycle events", ["event"]
)

# Inference protection
CIRCUIT_STATE = Gauge(
    "circuit_state", "Circuit breaker state (0=closed, 1=half_open, 2=open)"
)
CIRCUIT_TRANSITION_TOTAL = Counter(
    "circuit_transition_total", "Circuit breaker state changes", ["state"]
)
DEDUP_HIT_TOTAL = Counter(
    "dedup_hit_total", "Inbound events dropped as recent duplicates"
)
MODEL_CACHE_TOTAL = Counter(
    "model_cache_total", "Model client cache lookups", ["result"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
