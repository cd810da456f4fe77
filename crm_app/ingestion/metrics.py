"""Prometheus metrics helpers for the ingestion pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_jobs_finished_counter = Counter(
    "ingestion_jobs_finished_total",
    "Ingestion jobs that reached a terminal state, by status and job type.",
    ["status", "job_type"],
)
_rows_counter = Counter(
    "ingestion_rows_processed_total",
    "Rows processed by ingestion jobs, by outcome.",
    ["outcome"],
)
_batch_duration = Histogram(
    "ingestion_batch_duration_seconds",
    "Duration of one ingestion batch transaction in seconds.",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)
_account_resolution_counter = Counter(
    "ingestion_accounts_resolved_total",
    "Account resolutions by match type.",
    ["match_type"],
)
_suppression_hits_counter = Counter(
    "ingestion_suppression_hits_total",
    "Contacts suppressed during ingestion, by matching rule.",
    ["rule"],
)
_stale_resumes_counter = Counter(
    "ingestion_stale_jobs_resumed_total",
    "Stale processing jobs re-dispatched by the resume sweep.",
)


def record_job_finished(*, status: Literal["completed", "failed"], job_type: str) -> None:
    _jobs_finished_counter.labels(status=status, job_type=job_type).inc()


def record_batch(*, duration_seconds: float, succeeded: int, failed: int) -> None:
    """Capture metrics for one committed ingestion batch."""

    _batch_duration.observe(max(duration_seconds, 0.0))
    if succeeded:
        _rows_counter.labels(outcome="success").inc(succeeded)
    if failed:
        _rows_counter.labels(outcome="error").inc(failed)


def record_account_resolution(match_type: str) -> None:
    _account_resolution_counter.labels(match_type=match_type).inc()


def record_suppression_hit(rule: str) -> None:
    _suppression_hits_counter.labels(rule=rule).inc()


def record_stale_resumes(count: int) -> None:
    if count:
        _stale_resumes_counter.inc(count)
