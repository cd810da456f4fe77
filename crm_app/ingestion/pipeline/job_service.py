"""
Service helpers for creating, dispatching, listing and serializing ingestion
jobs.

The HTTP blueprint and the CLI share these helpers so job validation and the
status payload stay identical on both surfaces.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import and_
from sqlalchemy.orm import Session

from crm_app.models import Dataset, IngestionJob, IngestionJobStatus, IngestionJobType, db
from crm_app.models.base import as_utc

from ..adapters.csv_rows import parse_csv
from ..celery_app import get_celery_app
from ..contracts.fields import resolve_column_mapping
from ..errors import DatasetNotFoundError, JobNotFoundError

PROCESS_JOB_TASK = "ingestion.process_job"

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-created_at"

VALID_SORT_FIELDS = {
    "id": IngestionJob.id,
    "status": IngestionJob.status,
    "created_at": IngestionJob.created_at,
    "started_at": IngestionJob.started_at,
    "finished_at": IngestionJob.finished_at,
    "updated_at": IngestionJob.updated_at,
}


# ---------------------------------------------------------------------------
# Creation and dispatch
# ---------------------------------------------------------------------------


def coerce_job_type(value: str | IngestionJobType | None) -> IngestionJobType:
    if value in (None, ""):
        return IngestionJobType.CONTACTS
    if isinstance(value, IngestionJobType):
        return value
    normalized = str(value).strip().lower().replace("-", "_")
    try:
        return IngestionJobType(normalized)
    except ValueError:
        raise ValueError(f"Unsupported job type '{value}'.") from None


def create_job(
    dataset_id: int,
    csv_text: str,
    *,
    job_type: str | IngestionJobType | None = None,
    field_mappings: Sequence[Mapping[str, Any]] | None = None,
    update_mode: bool = False,
    source_system: str | None = None,
    actor_id: str | None = None,
    session: Session | None = None,
) -> IngestionJob:
    """
    Validate and persist a new ``pending`` job.

    The CSV is parsed once up front so malformed uploads are rejected before
    a job exists, and ``total_rows`` is known immediately.

    Raises:
        DatasetNotFoundError: ``dataset_id`` does not exist.
        CSVParseError: the payload is not usable CSV.
        FieldMappingError: ``field_mappings`` is malformed.
        ValueError: unknown ``job_type``.
    """
    session = session or db.session
    resolved_type = coerce_job_type(job_type)
    if session.get(Dataset, dataset_id) is None:
        raise DatasetNotFoundError(dataset_id)

    parsed = parse_csv(csv_text)
    resolve_column_mapping(parsed.headers, field_mappings)

    if source_system is None and has_app_context():
        source_system = current_app.config.get("INGESTION_SOURCE_SYSTEM")

    job = IngestionJob(
        dataset_id=dataset_id,
        job_type=resolved_type,
        status=IngestionJobStatus.PENDING,
        csv_text=csv_text,
        field_mappings=list(field_mappings) if field_mappings else None,
        update_mode=bool(update_mode),
        source_system=source_system,
        actor_id=actor_id,
        total_rows=len(parsed),
        processed_rows=0,
        success_count=0,
        error_count=0,
        errors=[],
        attempts=0,
    )
    session.add(job)
    session.commit()

    if has_app_context():
        current_app.logger.info(
            "Created ingestion job %s (%s rows) for dataset %s",
            job.id,
            job.total_rows,
            dataset_id,
            extra={
                "ingestion_job_id": job.id,
                "ingestion_job_type": resolved_type.value,
                "ingestion_dataset_id": dataset_id,
                "ingestion_total_rows": job.total_rows,
            },
        )
    return job


def dispatch_job(job_id: int, *, session: Session | None = None) -> str | None:
    """
    Queue ``job_id`` on the ingestion worker and store the Celery task id.

    Returns ``None`` when no Celery app is registered (ingestion disabled).
    Bumps ``updated_at`` so a resume sweep does not queue it again.
    """
    session = session or db.session
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return None
    task = celery_app.tasks.get(PROCESS_JOB_TASK)
    if task is None:
        raise RuntimeError(f"Celery task '{PROCESS_JOB_TASK}' is not registered.")

    async_result = task.apply_async(kwargs={"job_id": job_id})
    job = session.get(IngestionJob, job_id)
    if job is not None:
        job.task_id = async_result.id
        session.commit()
    current_app.logger.info(
        "Dispatched ingestion job %s as task %s",
        job_id,
        async_result.id,
        extra={"ingestion_job_id": job_id, "ingestion_task_id": async_result.id},
    )
    return async_result.id


# ---------------------------------------------------------------------------
# Status contract
# ---------------------------------------------------------------------------


def _isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_job_status(job: IngestionJob) -> dict[str, Any]:
    """Status payload polled by clients while a job runs."""
    return {
        "jobId": job.id,
        "datasetId": job.dataset_id,
        "jobType": job.job_type.value,
        "status": job.status.value,
        "updateMode": bool(job.update_mode),
        "totalRows": job.total_rows or 0,
        "processedRows": job.processed_rows or 0,
        "successCount": job.success_count or 0,
        "errorCount": job.error_count or 0,
        "errors": list(job.errors or []),
        "attempts": job.attempts or 0,
        "createdAt": _isoformat(job.created_at),
        "startedAt": _isoformat(job.started_at),
        "finishedAt": _isoformat(job.finished_at),
        "updatedAt": _isoformat(job.updated_at),
    }


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobFilters:
    """Validated filters for the jobs listing."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[IngestionJobStatus, ...] = field(default_factory=tuple)
    job_types: tuple[IngestionJobType, ...] = field(default_factory=tuple)
    dataset_id: int | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        job_types: Iterable[str] | None = None,
        dataset_id: int | str | None = None,
    ) -> "JobFilters":
        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            sort=resolved_sort,
            statuses=tuple(_coerce_status(value) for value in (statuses or ()) if value),
            job_types=tuple(coerce_job_type(value) for value in (job_types or ()) if value),
            dataset_id=_coerce_positive_int(dataset_id, fallback=None) if dataset_id not in (None, "") else None,
        )


@dataclass(slots=True)
class JobListResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int


class JobService:
    """Facade for querying ingestion jobs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_jobs(self, filters: JobFilters) -> JobListResult:
        query = self._apply_filters(self.session.query(IngestionJob), filters)
        total = query.count()
        if total == 0:
            return JobListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        jobs = (
            query.order_by(_resolve_sort_expression(filters.sort), IngestionJob.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return JobListResult(
            items=[serialize_job_status(job) for job in jobs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_job(self, job_id: int) -> IngestionJob:
        job = self.session.get(IngestionJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_status(self, job_id: int) -> dict[str, Any]:
        return serialize_job_status(self.get_job(job_id))

    @staticmethod
    def _apply_filters(query, filters: JobFilters):
        predicates = []
        if filters.statuses:
            predicates.append(IngestionJob.status.in_(filters.statuses))
        if filters.job_types:
            predicates.append(IngestionJob.job_type.in_(filters.job_types))
        if filters.dataset_id is not None:
            predicates.append(IngestionJob.dataset_id == filters.dataset_id)
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def _coerce_positive_int(candidate: int | str | None, *, fallback: int | None) -> int | None:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected a positive integer, received '{candidate}'.")


def _coerce_status(value: str | IngestionJobStatus) -> IngestionJobStatus:
    if isinstance(value, IngestionJobStatus):
        return value
    try:
        return IngestionJobStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _resolve_sort_expression(sort: str):
    column = VALID_SORT_FIELDS[sort.lstrip("-")]
    return column.desc() if sort.startswith("-") else column.asc()


__all__ = [
    "JobFilters",
    "JobListResult",
    "JobService",
    "PROCESS_JOB_TASK",
    "coerce_job_type",
    "create_job",
    "dispatch_job",
    "serialize_job_status",
]
