"""
CLI commands for the ingestion pipeline.

Mounted as ``flask ingestion ...`` by :func:`crm_app.ingestion.init_ingestion`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from crm_app.models.base import db
from crm_app.utils.ingestion import is_ingestion_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import CSVParseError, DatasetNotFoundError, FieldMappingError
from .pipeline.exclusion import DEFAULT_WINDOW_DAYS, enforce_submission_exclusion
from .pipeline.job_service import create_job, dispatch_job
from .pipeline.runner import resume_stale_jobs, run_job
from .pipeline.suppression import add_suppression


@click.group(name="ingestion")
@click.pass_context
def ingestion_cli(ctx):
    """Ingestion management commands."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_ingestion_enabled(app):
        raise click.ClickException(
            "Ingestion is disabled via INGESTION_ENABLED=false. Enable it to run ingestion CLI commands."
        )


def get_disabled_ingestion_group() -> click.Group:
    """
    Return a minimal command group that informs the operator ingestion is disabled.
    """

    @click.group(name="ingestion", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Ingestion commands are unavailable because INGESTION_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Ingestion Celery app is unavailable. Ensure INGESTION_ENABLED=true and the "
            "ingestion package initialises before running worker commands."
        )
    return celery_app


@ingestion_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the ingestion background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("ingestion", {})
    if not state.get("worker_enabled") and not app.config.get("INGESTION_WORKER_ENABLED"):
        click.echo(
            "Warning: INGESTION_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler for the stale-job sweep.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("ingestion")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting ingestion worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("ingestion.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'ingestion.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


@ingestion_cli.command("run")
@click.option("--dataset-id", required=True, type=int, help="Dataset receiving the rows.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the CSV file.",
)
@click.option(
    "--job-type",
    type=click.Choice(["contacts", "validation_results", "submissions"]),
    default="contacts",
    show_default=True,
)
@click.option("--update-mode", is_flag=True, help="Merge incoming values into existing contacts.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def ingestion_run(ctx, dataset_id: int, file_path: Path, job_type: str, update_mode: bool, inline: bool):
    """Create an ingestion job from a CSV file and run or queue it."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    csv_text = file_path.read_text(encoding="utf-8-sig")
    try:
        job = create_job(
            dataset_id,
            csv_text,
            job_type=job_type,
            update_mode=update_mode,
            actor_id="cli",
        )
    except (CSVParseError, DatasetNotFoundError, FieldMappingError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if not inline:
        _resolve_celery(app)
        task_id = dispatch_job(job.id)
        app.logger.info(
            "Ingestion job queued via CLI",
            extra={"ingestion_job_id": job.id, "ingestion_task_id": task_id, "ingestion_file": str(file_path)},
        )
        click.echo(json.dumps({"job_id": job.id, "task_id": task_id, "status": "queued"}))
        return

    outcome = run_job(job.id)
    click.echo(
        json.dumps(
            {
                "job_id": outcome.job_id,
                "status": outcome.status,
                "total_rows": outcome.total_rows,
                "processed_rows": outcome.processed_rows,
                "success_count": outcome.success_count,
                "error_count": outcome.error_count,
            }
        )
    )
    if outcome.status == "failed":
        raise click.ClickException(f"Ingestion job {job.id} failed.")


@ingestion_cli.command("resume-stale")
@click.option("--stale-after-seconds", type=int, help="Override INGESTION_STALE_AFTER_SECONDS.")
@click.option("--inline/--no-inline", default=False, help="Resume in this process instead of queueing.")
@click.pass_context
def ingestion_resume_stale(ctx, stale_after_seconds: Optional[int], inline: bool):
    """Re-run jobs stuck in ``processing`` without a recent checkpoint."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not inline:
        _resolve_celery(app)
    resumed = resume_stale_jobs(stale_after=stale_after_seconds, dispatch=None if inline else dispatch_job)
    click.echo(json.dumps({"resumed_job_ids": resumed, "count": len(resumed)}))


@ingestion_cli.command("exclusion-sweep")
@click.option("--dataset-id", required=True, type=int)
@click.option("--window-days", type=int, help="Override INGESTION_EXCLUSION_WINDOW_DAYS.")
@click.pass_context
def ingestion_exclusion_sweep(ctx, dataset_id: int, window_days: Optional[int]):
    """Re-apply the recent-submission exclusion window to a dataset."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    window = window_days or app.config.get("INGESTION_EXCLUSION_WINDOW_DAYS", DEFAULT_WINDOW_DAYS)
    stats = enforce_submission_exclusion(db.session, dataset_id, window_days=window)
    db.session.commit()
    click.echo(
        json.dumps(
            {
                "dataset_id": dataset_id,
                "checked": stats.checked,
                "excluded": stats.excluded,
                "reactivated": stats.reactivated,
            }
        )
    )


@ingestion_cli.command("suppress")
@click.option("--dataset-id", type=int, help="Limit the entry to one dataset; global when omitted.")
@click.option("--email")
@click.option("--cav-id")
@click.option("--cav-user-id")
@click.option("--full-name")
@click.option("--company")
@click.option("--reason")
def ingestion_suppress(dataset_id, email, cav_id, cav_user_id, full_name, company, reason):
    """Add a suppression list entry."""
    try:
        entry = add_suppression(
            db.session,
            dataset_id=dataset_id,
            email=email,
            cav_id=cav_id,
            cav_user_id=cav_user_id,
            full_name=full_name,
            company=company,
            reason=reason,
        )
    except ValueError as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    db.session.commit()
    click.echo(json.dumps({"id": entry.id, "dataset_id": entry.dataset_id, "email": entry.email_normalized}))
