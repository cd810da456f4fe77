"""
SQLAlchemy models backing bulk CSV ingestion.

Jobs, the append-only field change log, suppression entries and lead
submission history live here. Contacts and accounts are in their own modules.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow
from ..enums import enum_values


class IngestionJobStatus(str, enum.Enum):
    """Lifecycle states for an ingestion job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionJobStatus.COMPLETED, IngestionJobStatus.FAILED)


class IngestionJobType(str, enum.Enum):
    """What the rows of an uploaded CSV describe."""

    CONTACTS = "contacts"
    VALIDATION_RESULTS = "validation_results"
    SUBMISSIONS = "submissions"


class IngestionJob(BaseModel):
    """One CSV upload and its processing progress."""

    __tablename__ = "ingestion_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    dataset_id: Mapped[int | None] = mapped_column(
        ForeignKey("datasets.id", ondelete="SET NULL"), nullable=True, index=True
    )
    job_type: Mapped[IngestionJobType] = mapped_column(
        Enum(IngestionJobType, name="ingestion_job_type_enum", values_callable=enum_values),
        nullable=False,
        default=IngestionJobType.CONTACTS,
    )
    status: Mapped[IngestionJobStatus] = mapped_column(
        Enum(IngestionJobStatus, name="ingestion_job_status_enum", values_callable=enum_values),
        nullable=False,
        default=IngestionJobStatus.PENDING,
        index=True,
    )
    csv_text: Mapped[str] = mapped_column(db.Text, nullable=False)
    field_mappings: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    update_mode: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    source_system: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Most recent per-row errors as [{row, message}], oldest first.",
    )
    attempts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    task_id: Mapped[str | None] = mapped_column(db.String(155), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    dataset = relationship("Dataset", foreign_keys=[dataset_id])

    __table_args__ = (
        Index("idx_ingestion_jobs_status_updated", "status", "updated_at"),
        CheckConstraint("processed_rows >= 0", name="ck_ingestion_jobs_processed_non_negative"),
    )

    def __repr__(self):
        return f"<IngestionJob {self.id} {self.job_type.value} {self.status.value}>"


class FieldChangeLog(db.Model):
    """
    Append-only audit row written for every field a merge changed.

    Rows are never updated or deleted by the pipeline, so there is no
    ``updated_at`` column.
    """

    __tablename__ = "field_change_log"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int | None] = mapped_column(
        ForeignKey("ingestion_jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    field_key: Mapped[str] = mapped_column(db.String(100), nullable=False)
    old_value: Mapped[object | None] = mapped_column(db.JSON, nullable=True)
    new_value: Mapped[object | None] = mapped_column(db.JSON, nullable=True)
    source_system: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    survivorship_policy: Mapped[str] = mapped_column(db.String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_field_change_log_entity", "entity_type", "entity_id"),
        CheckConstraint("field_key <> ''", name="ck_field_change_log_field_non_empty"),
    )


class SuppressionEntry(BaseModel):
    """
    A suppressed identity, global when ``dataset_id`` is null.

    All match columns hold pre-normalized values. ``name_company_hash`` is only
    ever set when both the name and the company are non-empty.
    """

    __tablename__ = "suppression_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    dataset_id: Mapped[int | None] = mapped_column(
        ForeignKey("datasets.id", ondelete="CASCADE"), nullable=True, index=True
    )
    email_normalized: Mapped[str | None] = mapped_column(db.String(320), nullable=True, index=True)
    cav_id: Mapped[str | None] = mapped_column(db.String(120), nullable=True, index=True)
    cav_user_id: Mapped[str | None] = mapped_column(db.String(120), nullable=True, index=True)
    full_name_norm: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    company_norm: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    name_company_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "name_company_hash IS NULL OR (full_name_norm IS NOT NULL AND company_norm IS NOT NULL)",
            name="ck_suppression_hash_requires_both_parts",
        ),
    )


class LeadSubmission(BaseModel):
    """A lead delivered to the client; drives the recent-submission exclusion."""

    __tablename__ = "lead_submissions"

    id: Mapped[int] = mapped_column(primary_key=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )
    dataset_id: Mapped[int] = mapped_column(
        ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    submitted_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("contact_id", "dataset_id", "submitted_at", name="uq_lead_submission_contact_time"),
    )
