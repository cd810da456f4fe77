# crm_app/models/dataset.py

from __future__ import annotations

from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class Dataset(BaseModel):
    """
    A campaign dataset that CSV uploads are loaded into.

    ``eligibility_config`` drives the per-row eligibility decision:
    ``geo_allow``, ``title_keywords`` and ``senior_dm_fallback`` are lists of
    case-insensitive substrings; ``lead_cap_per_account`` optionally limits the
    number of contacts per account inside the dataset.
    """

    __tablename__ = "datasets"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    eligibility_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    def __repr__(self):
        return f"<Dataset {self.id} {self.name}>"
