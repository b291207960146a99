"""Prompt test run model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String

from invoice_processing.db.database import Base, utc_now
from invoice_processing.db.types import GUID


class PromptTestRun(Base):
    """
    Audit record of one test extraction run against a prompt.

    Attributes:
        prompt_id: Prompt the test was launched from
        success: Whether the attempt succeeded
        error_kind: Failure kind when unsuccessful
        custom_prompt_used: True when the operator tested edited text
            instead of the stored prompt text
    """

    __tablename__ = "prompt_test_runs"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    prompt_id = Column(GUID, ForeignKey("extraction_prompts.id"), nullable=False, index=True)

    success = Column(Boolean, nullable=False)
    error_kind = Column(String(50), nullable=True)
    confidence_score = Column(Float, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    custom_prompt_used = Column(Boolean, nullable=False, default=False)
    document_type = Column(String(10), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<PromptTestRun {self.id} success={self.success}>"
