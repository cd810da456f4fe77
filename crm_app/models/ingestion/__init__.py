"""
Ingestion-specific SQLAlchemy models: jobs, change log, suppression entries
and lead submission history.
"""

from .schema import (
    FieldChangeLog,
    IngestionJob,
    IngestionJobStatus,
    IngestionJobType,
    LeadSubmission,
    SuppressionEntry,
)

__all__ = [
    "FieldChangeLog",
    "IngestionJob",
    "IngestionJobStatus",
    "IngestionJobType",
    "LeadSubmission",
    "SuppressionEntry",
]
