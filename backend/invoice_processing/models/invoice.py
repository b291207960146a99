"""Invoice and line item models."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from invoice_processing.db.database import Base, utc_now
from invoice_processing.db.types import GUID, JSONB


class ReviewStatus:
    """Review status constants."""

    APPROVED = "approved"
    NEEDS_REVIEW = "needs_review"
    REJECTED = "rejected"


class ProcessingStatus:
    """Processing status constants."""

    PROCESSED = "processed"
    FAILED = "failed"


class Invoice(Base):
    """
    Invoice persisted by the production ingestion path.

    Status flow: processed (review_status approved | needs_review)

    Attributes:
        vendor_id: Vendor the invoice was uploaded for
        prompt_id: Prompt used for extraction, null for the built-in default
        confidence_score: Confidence reported by the extraction model
        review_status: needs_review when confidence fell below threshold
        extracted_data: Raw structured payload returned by the model
    """

    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_vendor_invoice_number", "vendor_id", "invoice_number"),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    vendor_id = Column(GUID, ForeignKey("vendors.id"), nullable=False, index=True)
    prompt_id = Column(GUID, ForeignKey("extraction_prompts.id"), nullable=True)

    # Header
    invoice_number = Column(String(100), nullable=True)
    customer_name = Column(String(255), nullable=True)
    invoice_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=True, default="USD")
    subtotal = Column(Numeric(12, 2), nullable=True)
    tax_amount = Column(Numeric(12, 2), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)

    # Source document
    file_type = Column(String(10), nullable=False)
    original_filename = Column(String(255), nullable=False)

    # Processing
    processing_status = Column(
        String(50), nullable=False, default=ProcessingStatus.PROCESSED
    )
    confidence_score = Column(Float, nullable=True)
    review_status = Column(
        String(50), nullable=False, default=ReviewStatus.APPROVED, index=True
    )
    review_notes = Column(Text, nullable=True)
    is_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of = Column(GUID, ForeignKey("invoices.id"), nullable=True)
    extracted_data = Column(JSONB, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=True, onupdate=utc_now)

    line_items = relationship(
        "LineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="LineItem.line_number",
        lazy="selectin",
    )

    @property
    def needs_review(self) -> bool:
        return self.review_status == ReviewStatus.NEEDS_REVIEW

    def __repr__(self):
        return f"<Invoice {self.invoice_number} vendor={self.vendor_id}>"


class LineItem(Base):
    """Invoice line item."""

    __tablename__ = "line_items"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    invoice_id = Column(
        GUID, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_number = Column(Integer, nullable=False)

    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    quantity = Column(Numeric(12, 3), nullable=True)
    unit_of_measure = Column(String(50), nullable=True)
    unit_price = Column(Numeric(12, 4), nullable=True)
    subtotal = Column(Numeric(12, 2), nullable=True)
    tax_amount = Column(Numeric(12, 2), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)
    sku = Column(String(100), nullable=True)

    invoice = relationship("Invoice", back_populates="line_items")

    def __repr__(self):
        return f"<LineItem {self.line_number} invoice={self.invoice_id}>"
