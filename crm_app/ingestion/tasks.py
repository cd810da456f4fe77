"""
Ingestion Celery tasks.

Each task runs inside a Flask application context (see
:mod:`crm_app.ingestion.celery_app`) and delegates to the pipeline; the tasks
only translate arguments and results.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from crm_app.models.base import db

from .pipeline.exclusion import DEFAULT_WINDOW_DAYS, enforce_submission_exclusion as run_exclusion_sweep
from .pipeline.job_service import dispatch_job
from .pipeline.runner import resume_stale_jobs as resume_stale, run_job


@shared_task(name="ingestion.healthcheck", bind=True)
def ingestion_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``/ingestion/worker_health`` and ``worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="ingestion.process_job", bind=True)
def process_job(self, *, job_id: int) -> dict[str, Any]:
    """
    Run one ingestion job to completion.

    Row and job failures are recorded on the job by the runner. Database
    errors propagate so the message is redelivered; the job stays in
    ``processing`` and resumes from its last checkpoint.
    """
    outcome = run_job(job_id)
    current_app.logger.info(
        "Ingestion task finished for job %s with status %s",
        job_id,
        outcome.status,
        extra={
            "ingestion_job_id": job_id,
            "ingestion_status": outcome.status,
            "ingestion_task_id": self.request.id,
            "ingestion_skipped_reason": outcome.skipped_reason,
        },
    )
    return {
        "job_id": outcome.job_id,
        "status": outcome.status,
        "total_rows": outcome.total_rows,
        "processed_rows": outcome.processed_rows,
        "success_count": outcome.success_count,
        "error_count": outcome.error_count,
        "skipped_reason": outcome.skipped_reason,
    }


@shared_task(name="ingestion.resume_stale_jobs", bind=True)
def resume_stale_jobs(self, *, stale_after_seconds: int | None = None) -> dict[str, Any]:
    """Periodic sweep re-queueing jobs whose worker stopped checkpointing."""
    resumed = resume_stale(stale_after=stale_after_seconds, dispatch=dispatch_job)
    return {"resumed_job_ids": resumed, "count": len(resumed)}


@shared_task(name="ingestion.enforce_submission_exclusion", bind=True)
def enforce_submission_exclusion(self, *, dataset_id: int, window_days: int | None = None) -> dict[str, Any]:
    """Re-apply the recent-submission window to one dataset."""
    window = window_days or current_app.config.get("INGESTION_EXCLUSION_WINDOW_DAYS", DEFAULT_WINDOW_DAYS)
    try:
        stats = run_exclusion_sweep(db.session, dataset_id, window_days=window)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "Submission exclusion task failed",
            extra={"ingestion_dataset_id": dataset_id},
        )
        raise
    return {
        "dataset_id": dataset_id,
        "checked": stats.checked,
        "excluded": stats.excluded,
        "reactivated": stats.reactivated,
    }
