# crm_app/models/contact.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .enums import EligibilityStatus, EmailStatus, SourceType, enum_values


class Contact(BaseModel):
    """
    A person loaded into a dataset.

    ``account_id`` is a weak reference: deleting an account nulls the link and
    never removes contacts.
    """

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(primary_key=True)
    dataset_id: Mapped[int | None] = mapped_column(
        ForeignKey("datasets.id", ondelete="SET NULL"), nullable=True, index=True
    )
    account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )

    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    title: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(320), nullable=True)
    email_normalized: Mapped[str | None] = mapped_column(db.String(320), nullable=True, index=True)
    direct_phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    direct_phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    mobile_phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    mobile_phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    contact_address_1: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    contact_address_2: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    contact_address_3: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    contact_city: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    contact_state: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    contact_postal_code: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    contact_country: Mapped[str | None] = mapped_column(db.String(120), nullable=True)

    cav_id: Mapped[str | None] = mapped_column(db.String(120), nullable=True, index=True)
    cav_user_id: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    source_type: Mapped[SourceType | None] = mapped_column(
        Enum(SourceType, name="contact_source_type_enum", values_callable=enum_values),
        nullable=True,
    )

    email_status: Mapped[EmailStatus] = mapped_column(
        Enum(EmailStatus, name="contact_email_status_enum", values_callable=enum_values),
        nullable=False,
        default=EmailStatus.UNKNOWN,
    )
    suppressed: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    suppression_rule: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    eligibility_status: Mapped[EligibilityStatus] = mapped_column(
        Enum(EligibilityStatus, name="contact_eligibility_status_enum", values_callable=enum_values),
        nullable=False,
        default=EligibilityStatus.PENDING_EMAIL_VALIDATION,
        index=True,
    )
    eligibility_reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    tags: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    intent_topics: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    custom_fields: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    source_system: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    source_record_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    account = relationship("Account", foreign_keys=[account_id], passive_deletes=True)

    __table_args__ = (
        Index("idx_contacts_dataset_email", "dataset_id", "email_normalized"),
        Index("idx_contacts_dataset_account", "dataset_id", "account_id"),
    )

    def __repr__(self):
        return f"<Contact {self.id} {self.full_name or self.email}>"
