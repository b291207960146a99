"""Vendor model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String

from invoice_processing.db.database import Base, utc_now
from invoice_processing.db.types import GUID


class Vendor(Base):
    """
    Invoice vendor.

    Attributes:
        id: Unique vendor identifier
        name: Machine name, unique
        display_name: Human-readable name
        active: Inactive vendors cannot ingest invoices
        active_prompt_id: Current production prompt; maintained only by
            the activation manager
    """

    __tablename__ = "vendors"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    # Plain pointer, no FK: prompts already reference vendors
    active_prompt_id = Column(GUID, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=True, onupdate=utc_now)

    def __repr__(self):
        return f"<Vendor {self.name}>"
