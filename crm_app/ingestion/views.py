"""
Ingestion blueprint endpoints: health probes and the job submission/status API.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from config.monitoring import IngestionMonitoring
from crm_app.utils.ingestion import is_ingestion_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import CSVParseError, DatasetNotFoundError, FieldMappingError, JobNotFoundError
from .pipeline.job_service import JobFilters, JobService, create_job, dispatch_job, serialize_job_status

ingestion_blueprint = Blueprint("ingestion", __name__, url_prefix="/ingestion")


@ingestion_blueprint.get("/health")
def ingestion_healthcheck():
    """
    Lightweight health endpoint proving the ingestion blueprint mounted correctly.
    """
    state = current_app.extensions.get("ingestion", {})
    return jsonify({"status": "ok", "enabled": state.get("enabled", False)}), 200


@ingestion_blueprint.get("/worker_health")
def ingestion_worker_health():
    """
    Validate ingestion worker availability via the heartbeat task.
    """
    state = current_app.extensions.get("ingestion", {})
    enabled = state.get("enabled", False)
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "ingestion_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set INGESTION_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("ingestion.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Ingestion worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_ingestion_enabled_api():
    if not is_ingestion_enabled(current_app):
        return _json_error("Ingestion is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _max_upload_bytes() -> int:
    return int(current_app.config.get("INGESTION_MAX_UPLOAD_MB", 25)) * 1024 * 1024


@ingestion_blueprint.post("/jobs")
def ingestion_jobs_create():
    """
    Accept a CSV payload and queue an ingestion job.

    Body: ``{"datasetId", "csvText", "jobType"?, "fieldMappings"?, "updateMode"?}``.
    Responds ``202`` with the job id; progress is polled from ``/jobs/<id>``.
    """
    enabled_response = _ensure_ingestion_enabled_api()
    if enabled_response:
        return enabled_response

    if request.content_length is not None and request.content_length > _max_upload_bytes():
        IngestionMonitoring.record_job_create(status="too_large")
        return _json_error("Upload exceeds the configured size limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        IngestionMonitoring.record_job_create(status="invalid_request")
        return _json_error("Request body must be a JSON object.", HTTPStatus.BAD_REQUEST)

    dataset_id = body.get("datasetId")
    csv_text = body.get("csvText")
    if not isinstance(dataset_id, int) or isinstance(dataset_id, bool):
        IngestionMonitoring.record_job_create(status="invalid_request")
        return _json_error("datasetId must be an integer.", HTTPStatus.BAD_REQUEST)
    if not isinstance(csv_text, str) or not csv_text.strip():
        IngestionMonitoring.record_job_create(status="invalid_request")
        return _json_error("csvText must be a non-empty string.", HTTPStatus.BAD_REQUEST)

    try:
        job = create_job(
            dataset_id,
            csv_text,
            job_type=body.get("jobType"),
            field_mappings=body.get("fieldMappings"),
            update_mode=bool(body.get("updateMode", False)),
            actor_id=request.headers.get("X-Actor-Id"),
        )
    except DatasetNotFoundError as exc:
        IngestionMonitoring.record_job_create(status="not_found")
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (CSVParseError, FieldMappingError, ValueError) as exc:
        IngestionMonitoring.record_job_create(status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    # Eager workers may finish the job inside dispatch; report it as queued.
    job_id, status = job.id, job.status.value
    task_id = dispatch_job(job_id)
    IngestionMonitoring.record_job_create(status="success", payload_bytes=len(csv_text.encode("utf-8")))
    return jsonify({"jobId": job_id, "status": status, "taskId": task_id}), HTTPStatus.ACCEPTED


@ingestion_blueprint.get("/jobs")
def ingestion_jobs_list():
    enabled_response = _ensure_ingestion_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        filters = JobFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size") or current_app.config.get("JOBS_PAGE_SIZE_DEFAULT"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            job_types=_split_csv(raw.get("job_type")),
            dataset_id=raw.get("dataset_id"),
        )
    except ValueError as exc:
        IngestionMonitoring.record_jobs_list(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = JobService().list_jobs(filters)
    duration = time.perf_counter() - start_time
    IngestionMonitoring.record_jobs_list(duration_seconds=duration, status="success")

    response_payload = {
        "jobs": result.items,
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
        "filters": {
            "sort": filters.sort,
            "statuses": [status.value for status in filters.statuses],
            "job_types": [job_type.value for job_type in filters.job_types],
            "dataset_id": filters.dataset_id,
        },
    }
    current_app.logger.info(
        "Ingestion jobs list retrieved",
        extra={
            "ingestion_job_count": len(result.items),
            "ingestion_total_jobs": result.total,
            "ingestion_filters": response_payload["filters"],
            "ingestion_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@ingestion_blueprint.get("/jobs/<int:job_id>")
def ingestion_job_detail(job_id: int):
    enabled_response = _ensure_ingestion_enabled_api()
    if enabled_response:
        return enabled_response

    start_time = time.perf_counter()
    try:
        job = JobService().get_job(job_id)
    except JobNotFoundError:
        IngestionMonitoring.record_job_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Ingestion job {job_id} not found.", HTTPStatus.NOT_FOUND)

    IngestionMonitoring.record_job_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(serialize_job_status(job)), HTTPStatus.OK
