import json
from typing import Any, Dict

from flask import Flask

from crm_app.ingestion import get_celery_app, init_ingestion
from crm_app.ingestion.celery_app import DEFAULT_QUEUE_NAME, RESUME_STALE_TASK
from crm_app.ingestion.pipeline.job_service import create_job, dispatch_job
from crm_app.models import Contact, EligibilityStatus, IngestionJob, IngestionJobStatus, LeadSubmission, SuppressionEntry, db

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_ingestion_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with ingestion enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        INGESTION_ENABLED=True,
    )
    app.config.update(overrides)
    init_ingestion(app)
    return app


def _last_json_line(output: str) -> Dict[str, Any]:
    return json.loads(output.strip().splitlines()[-1])


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_ingestion_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True
    assert celery_app.conf.beat_schedule["ingestion-resume-stale-jobs"]["task"] == RESUME_STALE_TASK


def test_celery_config_json_string_is_applied(tmp_path):
    app = build_ingestion_app(
        CELERY_CONFIG=json.dumps({"task_always_eager": True}),
        INSTANCE_PATH=str(tmp_path),
    )

    assert get_celery_app(app).conf.task_always_eager is True


def test_disabled_app_has_no_celery_and_blocks_cli(tmp_path):
    app = Flask(__name__, instance_path=str(tmp_path))
    app.config.update(SECRET_KEY="test-secret", TESTING=True, INGESTION_ENABLED=False)
    init_ingestion(app)

    assert get_celery_app(app) is None
    assert "ingestion" not in app.blueprints

    result = app.test_cli_runner().invoke(args=["ingestion"])
    assert result.exit_code != 0
    assert "INGESTION_ENABLED=false" in result.output


def test_worker_ping_cli(tmp_path):
    app = build_ingestion_app(INGESTION_WORKER_ENABLED=True, CELERY_CONFIG=EAGER, INSTANCE_PATH=str(tmp_path))

    runner = app.test_cli_runner()
    result = runner.invoke(args=["ingestion", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_ingestion_app(INGESTION_WORKER_ENABLED=True, CELERY_CONFIG=EAGER, INSTANCE_PATH=str(tmp_path))
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "ingestion",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "imports",
            "--beat",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
        "--beat",
    ]


def test_worker_health_endpoint_states(tmp_path):
    app = build_ingestion_app(INSTANCE_PATH=str(tmp_path / "disabled"))
    client = app.test_client()

    disabled_resp = client.get("/ingestion/worker_health")
    assert disabled_resp.status_code == 200
    disabled_payload = disabled_resp.get_json()
    assert disabled_payload["status"] == "disabled"
    assert disabled_payload["worker_enabled"] is False

    eager_app = build_ingestion_app(
        INGESTION_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(tmp_path / "eager"),
    )
    eager_client = eager_app.test_client()
    ok_resp = eager_client.get("/ingestion/worker_health")
    assert ok_resp.status_code == 200
    ok_payload = ok_resp.get_json()
    assert ok_payload["status"] == "ok"
    assert ok_payload["heartbeat"]["status"] == "ok"


def test_dispatch_runs_process_job_task_eagerly(dataset):
    job = create_job(dataset.id, "full_name,email,country\nJane Doe,jane@acme.com,US\n")

    task_id = dispatch_job(job.id)

    assert task_id
    db.session.expire_all()
    finished = db.session.get(IngestionJob, job.id)
    assert finished.status is IngestionJobStatus.COMPLETED
    assert finished.task_id == task_id
    assert db.session.query(Contact).count() == 1


def test_cli_run_inline(runner, dataset, tmp_path):
    csv_path = tmp_path / "contacts.csv"
    csv_path.write_text("\ufefffull_name,email,country\nJane Doe,jane@acme.com,US\nNo Country,x@acme.com,\n", encoding="utf-8")

    result = runner.invoke(args=["ingestion", "run", "--dataset-id", str(dataset.id), "--file", str(csv_path), "--inline"])

    assert result.exit_code == 0, result.output
    payload = _last_json_line(result.output)
    assert payload["status"] == "completed"
    assert (payload["success_count"], payload["error_count"]) == (1, 1)
    job = db.session.get(IngestionJob, payload["job_id"])
    assert job.actor_id == "cli"


def test_cli_run_rejects_unknown_dataset(runner, tmp_path):
    csv_path = tmp_path / "contacts.csv"
    csv_path.write_text("email\njane@acme.com\n", encoding="utf-8")

    result = runner.invoke(args=["ingestion", "run", "--dataset-id", "404", "--file", str(csv_path), "--inline"])

    assert result.exit_code != 0
    assert "Dataset 404 not found." in result.output


def test_cli_suppress(runner, dataset):
    result = runner.invoke(
        args=["ingestion", "suppress", "--dataset-id", str(dataset.id), "--email", "Jane@Acme.com", "--reason", "opt-out"]
    )

    assert result.exit_code == 0, result.output
    payload = _last_json_line(result.output)
    assert payload["email"] == "jane@acme.com"
    assert payload["dataset_id"] == dataset.id

    failure = runner.invoke(args=["ingestion", "suppress", "--full-name", "Jane Doe"])
    assert failure.exit_code != 0
    assert db.session.query(SuppressionEntry).count() == 1


def test_cli_exclusion_sweep(runner, dataset, make_contact):
    contact = make_contact(dataset, eligibility_status=EligibilityStatus.ELIGIBLE)
    db.session.add(LeadSubmission(contact_id=contact.id, dataset_id=dataset.id))
    db.session.commit()

    result = runner.invoke(args=["ingestion", "exclusion-sweep", "--dataset-id", str(dataset.id)])

    assert result.exit_code == 0, result.output
    assert _last_json_line(result.output) == {"dataset_id": dataset.id, "checked": 1, "excluded": 1, "reactivated": 0}
    db.session.expire_all()
    assert db.session.get(Contact, contact.id).eligibility_status is EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED


def test_cli_resume_stale_inline_with_nothing_to_do(runner):
    result = runner.invoke(args=["ingestion", "resume-stale", "--inline"])

    assert result.exit_code == 0, result.output
    assert _last_json_line(result.output) == {"resumed_job_ids": [], "count": 0}
