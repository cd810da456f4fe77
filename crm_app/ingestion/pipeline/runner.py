"""
Batch runner for ingestion jobs.

A job moves ``pending -> processing -> completed | failed``. Rows are processed
in batches, one transaction per batch; the job counters and the error tail are
written inside the same transaction as the rows, so ``processed_rows`` is
always a safe resume point. A worker that dies mid-batch loses at most that
batch, and the stale-job sweep hands the job to another worker which skips the
rows already checkpointed. Every checkpoint is conditional on the claiming
attempt, so a runner whose job was taken over or failed meanwhile stops
instead of overwriting the newer state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Sequence

from flask import current_app, has_app_context
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.survivorship import SurvivorshipProfile
from crm_app.models import Dataset, IngestionJob, IngestionJobStatus, IngestionJobType, db
from crm_app.models.base import utcnow

from ..adapters.csv_rows import CSVRow, ParsedCSV, parse_csv
from ..contracts.fields import resolve_column_mapping
from ..errors import (
    DatasetNotFoundError,
    IngestionError,
    JobClaimLostError,
    JobNotFoundError,
    RowValidationError,
)
from ..metrics import record_batch, record_job_finished, record_stale_resumes
from .account_resolver import AccountResolutionCache, AccountResolver
from .eligibility import EligibilityRules
from .exclusion import DEFAULT_WINDOW_DAYS, enforce_submission_exclusion
from .processors import ProcessingContext, RowProcessor, build_processor
from .survivorship import get_active_profile
from .upsert import Provenance

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_ERRORS = 100
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_STALE_AFTER = timedelta(minutes=5)

_module_logger = logging.getLogger(__name__)


def _logger():
    return current_app.logger if has_app_context() else _module_logger


def _config_value(key: str, default: Any) -> Any:
    if has_app_context():
        value = current_app.config.get(key)
        if value is not None:
            return value
    return default


def _batches(rows: Sequence[CSVRow], size: int) -> Iterator[Sequence[CSVRow]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


@dataclass(frozen=True)
class JobOutcome:
    """What a single :meth:`IngestionJobRunner.run` call did."""

    job_id: int
    status: str
    total_rows: int = 0
    processed_rows: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_reason: str | None = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @classmethod
    def from_job(cls, job: IngestionJob, *, skipped_reason: str | None = None) -> "JobOutcome":
        return cls(
            job_id=job.id,
            status=job.status.value,
            total_rows=job.total_rows or 0,
            processed_rows=job.processed_rows or 0,
            success_count=job.success_count or 0,
            error_count=job.error_count or 0,
            skipped_reason=skipped_reason,
        )


class IngestionJobRunner:
    """
    Claim and process one ingestion job.

    Row errors are recorded on the job and processing continues. Database
    errors roll back the current batch and propagate with the job left in
    ``processing`` at its last checkpoint. Anything else fails the job.
    """

    def __init__(
        self,
        job_id: int,
        *,
        session: Session | None = None,
        batch_size: int | None = None,
        max_errors: int | None = None,
        max_attempts: int | None = None,
        profile: SurvivorshipProfile | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.job_id = job_id
        self.session = session or db.session
        self.batch_size = max(1, batch_size or _config_value("INGESTION_BATCH_SIZE", DEFAULT_BATCH_SIZE))
        self.max_errors = max(1, max_errors or _config_value("INGESTION_MAX_ERRORS_KEPT", DEFAULT_MAX_ERRORS))
        self.max_attempts = max(1, max_attempts or _config_value("INGESTION_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))
        self.profile = profile
        self.now_fn = now_fn
        self.cache = AccountResolutionCache()
        # ``attempts`` as written by our claim; every later job write is conditional on it
        self.attempt: int | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> JobOutcome:
        try:
            job = self._claim()
        except JobNotFoundError as exc:
            _logger().warning(str(exc), extra={"ingestion_job_id": self.job_id})
            return JobOutcome(job_id=self.job_id, status="missing", skipped_reason="not_found")
        if isinstance(job, JobOutcome):
            return job

        try:
            if job.attempts > self.max_attempts:
                raise IngestionError(f"Job exceeded the maximum of {self.max_attempts} attempts.")
            return self._execute(job)
        except JobClaimLostError:
            return self._claim_lost()
        except SQLAlchemyError:
            self.session.rollback()
            self.cache.clear()
            _logger().exception(
                "Ingestion job %s hit a database error; left in processing for resume",
                self.job_id,
                extra={"ingestion_job_id": self.job_id},
            )
            raise
        except Exception as exc:
            return self._fail(str(exc) or exc.__class__.__name__)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def _claim(self) -> IngestionJob | JobOutcome:
        job = self.session.get(IngestionJob, self.job_id)
        if job is None:
            raise JobNotFoundError(self.job_id)
        if job.status.is_terminal:
            return JobOutcome.from_job(job, skipped_reason="terminal")

        now = self.now_fn()
        expected = job.status
        values: dict[str, Any] = {
            "status": IngestionJobStatus.PROCESSING,
            "attempts": IngestionJob.attempts + 1,
            "updated_at": now,
        }
        if expected == IngestionJobStatus.PENDING:
            values["started_at"] = func.coalesce(IngestionJob.started_at, now)
        result = self.session.execute(
            update(IngestionJob)
            .where(IngestionJob.id == self.job_id, IngestionJob.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.refresh(job)
        if result.rowcount == 0:
            return JobOutcome.from_job(job, skipped_reason="claimed_elsewhere")

        self.attempt = job.attempts
        resumed = expected == IngestionJobStatus.PROCESSING
        _logger().info(
            "%s ingestion job %s (attempt %s, %s rows already processed)",
            "Resuming" if resumed else "Starting",
            job.id,
            job.attempts,
            job.processed_rows,
            extra={
                "ingestion_job_id": job.id,
                "ingestion_job_type": job.job_type.value,
                "ingestion_attempt": job.attempts,
                "ingestion_resumed": resumed,
            },
        )
        return job

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _execute(self, job: IngestionJob) -> JobOutcome:
        parsed = parse_csv(job.csv_text)
        dataset = self.session.get(Dataset, job.dataset_id) if job.dataset_id is not None else None
        if dataset is None:
            raise DatasetNotFoundError(job.dataset_id)
        mapping = resolve_column_mapping(parsed.headers, job.field_mappings)

        if job.total_rows != len(parsed):
            self._write_job(job, total_rows=len(parsed), updated_at=self.now_fn())

        processor = build_processor(job.job_type, self._context(job, dataset, mapping))
        self._process_rows(job, processor, parsed)
        return self._complete(job)

    def _context(self, job: IngestionJob, dataset: Dataset, mapping) -> ProcessingContext:
        provenance = Provenance(
            source_system=job.source_system or _config_value("INGESTION_SOURCE_SYSTEM", "csv_upload"),
            actor_id=job.actor_id,
            job_id=job.id,
        )
        resolver = AccountResolver(
            self.session,
            self.cache,
            accept_threshold=_config_value("INGESTION_FUZZY_ACCEPT_THRESHOLD", 0.75),
            candidate_limit=_config_value("INGESTION_CANDIDATE_LIMIT", 300),
            provenance=provenance,
        )
        return ProcessingContext(
            session=self.session,
            dataset=dataset,
            mapping=mapping,
            provenance=provenance,
            profile=self.profile or get_active_profile(),
            update_mode=bool(job.update_mode),
            now_fn=self.now_fn,
            resolver=resolver,
            rules=EligibilityRules.from_config(dataset.eligibility_config),
        )

    def _process_rows(self, job: IngestionJob, processor: RowProcessor, parsed: ParsedCSV) -> None:
        remaining = parsed.rows[job.processed_rows or 0 :]
        for batch in _batches(remaining, self.batch_size):
            self._run_batch(job, processor, batch)

    def _run_batch(self, job: IngestionJob, processor: RowProcessor, batch: Sequence[CSVRow]) -> None:
        started = time.perf_counter()
        processed = (job.processed_rows or 0) + len(batch)
        success_count = job.success_count or 0
        error_count = job.error_count or 0
        errors = list(job.errors or [])
        succeeded = 0
        new_errors: list[dict[str, Any]] = []
        for row in batch:
            try:
                processor.process(row)
            except RowValidationError as exc:
                new_errors.append({"row": row.number, "message": str(exc)})
            else:
                succeeded += 1

        values: dict[str, Any] = {
            "processed_rows": processed,
            "success_count": success_count + succeeded,
            "error_count": error_count + len(new_errors),
            "updated_at": self.now_fn(),
        }
        if new_errors:
            values["errors"] = (errors + new_errors)[-self.max_errors :]
        self._write_job(job, **values)

        record_batch(duration_seconds=time.perf_counter() - started, succeeded=succeeded, failed=len(new_errors))
        _logger().debug(
            "Ingestion job %s checkpoint at row %s/%s",
            job.id,
            job.processed_rows,
            job.total_rows,
            extra={
                "ingestion_job_id": job.id,
                "ingestion_processed_rows": job.processed_rows,
                "ingestion_success_count": job.success_count,
                "ingestion_error_count": job.error_count,
            },
        )

    def _write_job(self, job: IngestionJob, **values: Any) -> None:
        """
        Commit ``values`` onto the job while this runner still holds it.

        The update only matches while the job is ``processing`` under the
        attempt this runner claimed. When another attempt has taken over (or
        already failed the job) nothing is written, the open batch is rolled
        back and :class:`JobClaimLostError` stops the run.
        """
        result = self.session.execute(
            update(IngestionJob)
            .where(
                IngestionJob.id == self.job_id,
                IngestionJob.status == IngestionJobStatus.PROCESSING,
                IngestionJob.attempts == self.attempt,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise JobClaimLostError(self.job_id)
        self.session.commit()
        self.session.expire(job)

    def _complete(self, job: IngestionJob) -> JobOutcome:
        now = self.now_fn()
        self._write_job(job, status=IngestionJobStatus.COMPLETED, finished_at=now, updated_at=now)
        record_job_finished(status="completed", job_type=job.job_type.value)
        _logger().info(
            "Ingestion job %s completed: %s succeeded, %s failed",
            job.id,
            job.success_count,
            job.error_count,
            extra={
                "ingestion_job_id": job.id,
                "ingestion_status": job.status.value,
                "ingestion_total_rows": job.total_rows,
                "ingestion_success_count": job.success_count,
                "ingestion_error_count": job.error_count,
            },
        )
        if job.job_type == IngestionJobType.SUBMISSIONS and job.success_count and job.dataset_id is not None:
            self._sweep_exclusions(job.dataset_id)
        return JobOutcome.from_job(job)

    def _sweep_exclusions(self, dataset_id: int) -> None:
        try:
            enforce_submission_exclusion(
                self.session,
                dataset_id,
                now=self.now_fn(),
                window_days=_config_value("INGESTION_EXCLUSION_WINDOW_DAYS", DEFAULT_WINDOW_DAYS),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            _logger().exception(
                "Submission exclusion sweep failed for dataset %s",
                dataset_id,
                extra={"ingestion_job_id": self.job_id, "ingestion_dataset_id": dataset_id},
            )

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    def _claim_lost(self) -> JobOutcome:
        self.session.rollback()
        self.cache.clear()
        job = self.session.get(IngestionJob, self.job_id)
        _logger().warning(
            "Ingestion job %s was taken over by another attempt; stopping attempt %s",
            self.job_id,
            self.attempt,
            extra={"ingestion_job_id": self.job_id, "ingestion_attempt": self.attempt},
        )
        if job is None:
            return JobOutcome(job_id=self.job_id, status="missing", skipped_reason="not_found")
        return JobOutcome.from_job(job, skipped_reason="claimed_elsewhere")

    def _fail(self, message: str) -> JobOutcome:
        self.session.rollback()
        self.cache.clear()
        now = self.now_fn()
        job = None
        try:
            job = self.session.get(IngestionJob, self.job_id)
            if job is not None:
                self._write_job(
                    job,
                    status=IngestionJobStatus.FAILED,
                    errors=[{"row": 0, "message": message}],
                    finished_at=now,
                    updated_at=now,
                )
        except JobClaimLostError:
            return self._claim_lost()
        except SQLAlchemyError:
            self.session.rollback()
            _logger().exception(
                "Could not record failure of ingestion job %s",
                self.job_id,
                extra={"ingestion_job_id": self.job_id},
            )
        record_job_finished(
            status="failed",
            job_type=job.job_type.value if job is not None else "unknown",
        )
        _logger().error(
            "Ingestion job %s failed: %s",
            self.job_id,
            message,
            extra={"ingestion_job_id": self.job_id, "ingestion_status": "failed"},
        )
        if job is None:
            return JobOutcome(job_id=self.job_id, status=IngestionJobStatus.FAILED.value)
        return JobOutcome(
            job_id=self.job_id,
            status=IngestionJobStatus.FAILED.value,
            total_rows=job.total_rows or 0,
            processed_rows=job.processed_rows or 0,
            success_count=job.success_count or 0,
            error_count=job.error_count or 0,
        )


def run_job(job_id: int, **kwargs: Any) -> JobOutcome:
    """Convenience wrapper used by the Celery task and the CLI."""
    return IngestionJobRunner(job_id, **kwargs).run()


# ---------------------------------------------------------------------------
# Stale job recovery
# ---------------------------------------------------------------------------


def _stale_window(stale_after: timedelta | int | float | None) -> timedelta:
    if stale_after is None:
        seconds = _config_value("INGESTION_STALE_AFTER_SECONDS", DEFAULT_STALE_AFTER.total_seconds())
        return timedelta(seconds=seconds)
    if isinstance(stale_after, timedelta):
        return stale_after
    return timedelta(seconds=stale_after)


def find_stale_jobs(
    session: Session,
    now: datetime | None = None,
    stale_after: timedelta | int | float | None = None,
) -> list[IngestionJob]:
    """Jobs stuck in ``processing`` with no checkpoint inside the window."""
    now = now or utcnow()
    cutoff = now - _stale_window(stale_after)
    return (
        session.query(IngestionJob)
        .filter(IngestionJob.status == IngestionJobStatus.PROCESSING, IngestionJob.updated_at < cutoff)
        .order_by(IngestionJob.updated_at, IngestionJob.id)
        .all()
    )


def resume_stale_jobs(
    now: datetime | None = None,
    stale_after: timedelta | int | float | None = None,
    dispatch: Callable[[int], Any] | None = None,
    *,
    session: Session | None = None,
) -> list[int]:
    """
    Re-dispatch stale jobs and return their ids.

    ``updated_at`` is bumped before dispatching so the next sweep does not
    queue the same job twice while the first redelivery is still waiting.
    Without ``dispatch`` the jobs are run inline.
    """
    session = session or db.session
    now = now or utcnow()
    stale = find_stale_jobs(session, now, stale_after)
    if not stale:
        return []
    job_ids = [job.id for job in stale]
    for job in stale:
        job.updated_at = now
    session.commit()

    dispatch = dispatch or run_job
    resumed: list[int] = []
    for job_id in job_ids:
        try:
            dispatch(job_id)
        except Exception:
            _logger().exception("Failed to resume ingestion job %s", job_id, extra={"ingestion_job_id": job_id})
            continue
        resumed.append(job_id)

    record_stale_resumes(len(resumed))
    _logger().info(
        "Resumed %s stale ingestion job(s)",
        len(resumed),
        extra={"ingestion_resumed_job_ids": resumed},
    )
    return resumed


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_ERRORS",
    "DEFAULT_STALE_AFTER",
    "IngestionJobRunner",
    "JobOutcome",
    "find_stale_jobs",
    "resume_stale_jobs",
    "run_job",
]
