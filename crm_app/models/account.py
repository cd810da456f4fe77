# crm_app/models/account.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class Account(BaseModel):
    """Canonical company record that contacts are linked to."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    name_normalized: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    domain: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    domain_normalized: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)

    industry: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    annual_revenue: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    employees_size_range: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    year_founded: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    sic_code: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    naics_code: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    hq_address_1: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    hq_address_2: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    hq_address_3: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    hq_city: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    hq_state: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    hq_postal_code: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    hq_country: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    main_phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    main_phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True)

    tags: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    tech_stack: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    intent_topics: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    custom_fields: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    source_system: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    source_record_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_accounts_name_geo", "name_normalized", "hq_city", "hq_country"),)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return f"<Account {self.id} {self.name}>"
