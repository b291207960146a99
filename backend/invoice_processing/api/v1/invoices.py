"""Invoice ingestion and review API routes."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.db.database import get_db
from invoice_processing.models.invoice import Invoice, ReviewStatus
from invoice_processing.modules.extraction.schemas import (
    InvoiceReviewItem,
    ReviewQueueResponse,
)
from invoice_processing.modules.extraction.services.document_processor import DocumentProcessor
from invoice_processing.modules.extraction.services.orchestrator import ExtractionOrchestrator

from .deps import get_document_processor, get_production_orchestrator

router = APIRouter()


@router.post("/upload")
async def upload_invoice(
    file: UploadFile = File(..., description="Invoice to ingest (PDF or HTML)"),
    vendor_id: UUID = Form(..., description="Vendor the invoice belongs to"),
    processor: DocumentProcessor = Depends(get_document_processor),
    orchestrator: ExtractionOrchestrator = Depends(get_production_orchestrator),
):
    """
    Extract and store an invoice using the vendor's active prompt.

    Returns 201 with the stored invoice summary. A duplicate returns 409 with
    the extracted data so the clash can be inspected. Low-confidence results
    are stored and flagged for review rather than rejected.
    """
    raw_bytes = await file.read()
    processor.validate_upload(file.filename, file.content_type, len(raw_bytes))

    result = await orchestrator.run_production(vendor_id, raw_bytes, file.filename)
    status_code = status.HTTP_201_CREATED if result.success else result.status_code
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.get("/review-queue", response_model=ReviewQueueResponse)
async def review_queue(
    vendor_id: Optional[UUID] = Query(None, description="Filter by vendor"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Invoices flagged for review, oldest first."""
    conditions = [Invoice.review_status == ReviewStatus.NEEDS_REVIEW]
    if vendor_id is not None:
        conditions.append(Invoice.vendor_id == vendor_id)

    total = (
        await db.execute(select(func.count()).select_from(Invoice).where(*conditions))
    ).scalar_one()
    result = await db.execute(
        select(Invoice)
        .where(*conditions)
        .order_by(Invoice.created_at.asc())
        .limit(limit)
        .offset(offset)
    )
    return ReviewQueueResponse(
        invoices=[InvoiceReviewItem.model_validate(i) for i in result.scalars().all()],
        total=total,
    )
