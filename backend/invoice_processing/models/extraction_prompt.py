"""Extraction prompt model."""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from invoice_processing.db.database import Base, utc_now
from invoice_processing.db.types import GUID


class ExtractionPrompt(Base):
    """
    Versioned extraction prompt.

    Records are immutable once written: editing creates a new version whose
    parent_prompt_id points at the edited prompt. Only is_active and
    deleted_at change after insert.

    Attributes:
        id: Unique prompt identifier
        vendor_id: Owning vendor, null for vendor-agnostic templates
        prompt_name: Display name
        prompt_text: Instructions sent to the extraction model
        version: 1 for a new chain, parent.version + 1 for a revision
        parent_prompt_id: Version this one was derived from
        chain_root_id: First version of the chain (its own id for version 1)
        is_template: Reusable template, never active
        is_active: Production prompt for its vendor
        deleted_at: Soft delete marker; deleted prompts stay resolvable by id
    """

    __tablename__ = "extraction_prompts"
    __table_args__ = (
        UniqueConstraint("chain_root_id", "version", name="uq_extraction_prompts_chain_version"),
        CheckConstraint("version >= 1", name="ck_extraction_prompts_version_positive"),
        CheckConstraint(
            "NOT (is_template AND is_active)",
            name="ck_extraction_prompts_template_not_active",
        ),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    vendor_id = Column(GUID, ForeignKey("vendors.id"), nullable=True, index=True)

    prompt_name = Column(String(255), nullable=False)
    prompt_text = Column(Text, nullable=False)
    invoice_type = Column(String(100), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    parent_prompt_id = Column(GUID, ForeignKey("extraction_prompts.id"), nullable=True)
    chain_root_id = Column(GUID, nullable=False, index=True)

    is_template = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=False, index=True)

    created_by = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    deleted_at = Column(DateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return f"<ExtractionPrompt {self.prompt_name} v{self.version}>"
