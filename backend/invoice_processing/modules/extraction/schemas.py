"""Pydantic schemas for prompt management and invoice extraction."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .exceptions import InvoiceProcessingError


# Vendor schemas
class VendorCreate(BaseModel):
    """Schema for registering a vendor."""

    name: str = Field(..., min_length=1, max_length=255)
    display_name: Optional[str] = Field(None, max_length=255)


class VendorResponse(BaseModel):
    """Schema for vendor response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    display_name: str
    active: bool
    active_prompt_id: Optional[UUID]
    created_at: datetime


# Prompt schemas
class PromptCreate(BaseModel):
    """Schema for creating a new prompt chain."""

    prompt_name: str = Field(..., min_length=1, max_length=255)
    prompt_text: str = Field(..., description="Instructions sent to the extraction model")
    vendor_id: Optional[UUID] = Field(None, description="Owning vendor, omit for templates")
    is_template: bool = False
    invoice_type: Optional[str] = Field(None, max_length=100)
    created_by: Optional[str] = Field(None, max_length=255)


class PromptRevise(BaseModel):
    """Schema for revising a prompt. Always produces a new version."""

    prompt_text: str
    prompt_name: Optional[str] = Field(None, max_length=255)
    created_by: Optional[str] = Field(None, max_length=255)


class PromptResponse(BaseModel):
    """Schema for prompt response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    vendor_id: Optional[UUID]
    prompt_name: str
    prompt_text: str
    invoice_type: Optional[str]
    version: int
    parent_prompt_id: Optional[UUID]
    chain_root_id: UUID
    is_template: bool
    is_active: bool
    created_by: str
    created_at: datetime
    deleted_at: Optional[datetime]


class PromptListResponse(BaseModel):
    """Response for prompt list endpoint."""

    prompts: List[PromptResponse]
    total: int
    limit: int
    offset: int


class PromptHistoryResponse(BaseModel):
    """Version chain ordered by version ascending."""

    chain_root_id: UUID
    versions: List[PromptResponse]


# Prompt testing schemas
class PromptTestUploadResponse(BaseModel):
    """Response for the test-upload endpoint."""

    temp_file_id: str
    extracted_content: str
    document_type: str
    filename: str
    expires_at: datetime


class PromptTestRunRequest(BaseModel):
    """Body of the test-run endpoint. Accepts camelCase keys from the UI."""

    model_config = ConfigDict(populate_by_name=True)

    temp_file_id: str = Field(
        ..., validation_alias=AliasChoices("temp_file_id", "tempFileId")
    )
    prompt_text: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("prompt_text", "promptText"),
        description="Edited prompt text; the stored prompt text is used when omitted",
    )
    document_type: Optional[str] = None


class PromptTestRunSummary(BaseModel):
    """Audit record of a test run."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    prompt_id: UUID
    success: bool
    error_kind: Optional[str]
    confidence_score: Optional[float]
    processing_time_ms: Optional[int]
    custom_prompt_used: bool
    document_type: Optional[str]
    created_at: datetime


class PromptTestRunListResponse(BaseModel):
    runs: List[PromptTestRunSummary]


# Extraction result schemas
class AttemptState:
    """Extraction attempt state constants."""

    RECEIVED = "received"
    TEXT_RESOLVED = "text_resolved"
    PROMPT_VALIDATED = "prompt_validated"
    AI_INVOKED = "ai_invoked"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExtractionErrorInfo(BaseModel):
    """Classified failure of an extraction attempt."""

    kind: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class InvoiceSummary(BaseModel):
    """Summary of an invoice persisted by the production path."""

    id: UUID
    invoice_number: Optional[str]
    customer_name: Optional[str]
    total_amount: Optional[Decimal]
    line_items_count: int
    confidence_score: Optional[float]
    review_status: str
    file_type: str
    vendor_name: str


class ExtractionResult(BaseModel):
    """Uniform result envelope for test and production extraction."""

    success: bool
    state: str = AttemptState.RECEIVED
    extracted_data: Optional[Dict[str, Any]] = None
    confidence_score: Optional[float] = None
    processing_time_ms: Optional[int] = None
    error: Optional[ExtractionErrorInfo] = None
    low_confidence: bool = False
    warnings: List[str] = Field(default_factory=list)
    prompt_id: Optional[UUID] = None
    custom_prompt_used: bool = False
    invoice: Optional[InvoiceSummary] = None

    @property
    def status_code(self) -> int:
        """HTTP status matching the error kind (200 on success)."""
        if self.success:
            return 200
        return ERROR_STATUS_CODES.get(self.error.kind, 500)


def _status_codes() -> Dict[str, int]:
    codes = {}
    pending = list(InvoiceProcessingError.__subclasses__())
    while pending:
        cls = pending.pop()
        codes[cls.kind] = cls.status_code
        pending.extend(cls.__subclasses__())
    return codes


ERROR_STATUS_CODES = _status_codes()


# Invoice schemas
class InvoiceReviewItem(BaseModel):
    """Invoice entry in the review queue."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    vendor_id: UUID
    invoice_number: Optional[str]
    customer_name: Optional[str]
    total_amount: Optional[Decimal]
    confidence_score: Optional[float]
    review_status: str
    original_filename: str
    created_at: datetime


class ReviewQueueResponse(BaseModel):
    invoices: List[InvoiceReviewItem]
    total: int
