# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Logging and monitoring configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "Meridian CRM")
    APP_VERSION = os.environ.get("APP_VERSION", "0.4.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class IngestionMonitoring:
    """Prometheus metric helpers for the ingestion job endpoints."""

    JOBS_CREATE_COUNTER = Counter(
        "ingestion_jobs_create_requests_total",
        "Total ingestion job creation API requests.",
        labelnames=("status",),
    )
    JOBS_CREATE_PAYLOAD_BYTES = Histogram(
        "ingestion_jobs_create_payload_bytes",
        "Size of CSV payloads accepted by the job creation API.",
        buckets=(1_000, 10_000, 100_000, 1_000_000, 5_000_000, 25_000_000),
    )
    JOBS_LIST_COUNTER = Counter(
        "ingestion_jobs_list_requests_total",
        "Total ingestion jobs list API requests.",
        labelnames=("status",),
    )
    JOBS_LIST_LATENCY = Histogram(
        "ingestion_jobs_list_request_seconds",
        "Latency histogram for the ingestion jobs list API.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )
    JOBS_DETAIL_COUNTER = Counter(
        "ingestion_jobs_detail_requests_total",
        "Total ingestion job status API requests.",
        labelnames=("status",),
    )
    JOBS_DETAIL_LATENCY = Histogram(
        "ingestion_jobs_detail_request_seconds",
        "Latency histogram for the ingestion job status API.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )

    @classmethod
    def record_job_create(cls, *, status: str, payload_bytes: int = 0):
        cls.JOBS_CREATE_COUNTER.labels(status=status).inc()
        if status == "success":
            cls.JOBS_CREATE_PAYLOAD_BYTES.observe(float(max(payload_bytes, 0)))

    @classmethod
    def record_jobs_list(cls, *, duration_seconds: float, status: str):
        cls.JOBS_LIST_COUNTER.labels(status=status).inc()
        cls.JOBS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_job_detail(cls, *, duration_seconds: float, status: str):
        cls.JOBS_DETAIL_COUNTER.labels(status=status).inc()
        cls.JOBS_DETAIL_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
