# crm_app/models/__init__.py
"""
Database models package
"""

from .account import Account
from .base import BaseModel, db
from .contact import Contact
from .dataset import Dataset
from .enums import EligibilityStatus, EmailStatus, SourceType
from .ingestion import (
    FieldChangeLog,
    IngestionJob,
    IngestionJobStatus,
    IngestionJobType,
    LeadSubmission,
    SuppressionEntry,
)

__all__ = [
    "db",
    "BaseModel",
    "Account",
    "Contact",
    "Dataset",
    # Enums
    "EligibilityStatus",
    "EmailStatus",
    "SourceType",
    # Ingestion models
    "FieldChangeLog",
    "IngestionJob",
    "IngestionJobStatus",
    "IngestionJobType",
    "LeadSubmission",
    "SuppressionEntry",
]
