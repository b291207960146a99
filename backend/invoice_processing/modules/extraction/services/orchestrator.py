"""
Extraction orchestration service.

Drives an extraction attempt through its pipeline:
1. Text resolution (test cache or fresh text extraction)
2. Prompt structure validation, before any AI call is spent
3. AI structured extraction, timed and bounded by a timeout
4. Production only: duplicate/confidence guard and persistence

Every outcome is returned as an ExtractionResult; classified failures never
escape as exceptions.
"""

import asyncio
import logging
import time
import uuid
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.core.config import settings
from invoice_processing.core.locks import KeyedLocks, vendor_key
from invoice_processing.core.logging import log_extraction_event
from invoice_processing.models.invoice import Invoice, LineItem, ReviewStatus
from invoice_processing.models.vendor import Vendor

from ..exceptions import (
    DuplicateDetected,
    InvoiceProcessingError,
    PersistenceFailed,
    UpstreamExtractionFailed,
    VendorNotFound,
)
from ..prompts.activation import ActivationManager
from ..prompts.defaults import DEFAULT_EXTRACTION_PROMPT, get_base_template
from ..protocols import AIExtraction, AIExtractorProtocol, TextExtractorProtocol
from ..schemas import AttemptState, ExtractionErrorInfo, ExtractionResult, InvoiceSummary
from .document_cache import TemporaryDocumentCache
from .guard import DuplicateConfidenceGuard, GuardVerdict
from .prompt_validator import PromptStructureValidator
from .validators import InvoiceDataValidator, to_date, to_decimal, to_text

logger = logging.getLogger(__name__)

QUANTITY_PLACES = Decimal("0.001")
UNIT_PRICE_PLACES = Decimal("0.0001")


class AttemptStateError(RuntimeError):
    """Raised on an illegal extraction attempt state transition."""


class ExtractionAttempt:
    """
    State of a single extraction attempt.

    Status flow: received -> text_resolved -> prompt_validated -> ai_invoked
    -> succeeded | failed. Any non-terminal state may fail; terminal states
    never change.
    """

    TRANSITIONS = {
        AttemptState.RECEIVED: {AttemptState.TEXT_RESOLVED, AttemptState.FAILED},
        AttemptState.TEXT_RESOLVED: {AttemptState.PROMPT_VALIDATED, AttemptState.FAILED},
        AttemptState.PROMPT_VALIDATED: {AttemptState.AI_INVOKED, AttemptState.FAILED},
        AttemptState.AI_INVOKED: {AttemptState.SUCCEEDED, AttemptState.FAILED},
        AttemptState.SUCCEEDED: set(),
        AttemptState.FAILED: set(),
    }

    def __init__(self, path: str):
        self.path = path
        self.state = AttemptState.RECEIVED
        self.failure_kind: Optional[str] = None
        self.extraction: Optional[AIExtraction] = None
        self.processing_time_ms: Optional[int] = None

    def advance(self, state: str):
        if state not in self.TRANSITIONS[self.state]:
            raise AttemptStateError(f"Cannot move extraction attempt from {self.state} to {state}")
        self.state = state

    def fail(self, kind: str):
        self.advance(AttemptState.FAILED)
        self.failure_kind = kind

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.state]


class ExtractionOrchestrator:
    """
    Runs test and production extractions.

    Collaborators are injected per request; production ingestion additionally
    needs the request's database session, activation manager and guard.
    """

    def __init__(
        self,
        text_extractor: TextExtractorProtocol,
        ai_extractor: AIExtractorProtocol,
        cache: Optional[TemporaryDocumentCache] = None,
        prompt_validator: Optional[PromptStructureValidator] = None,
        data_validator: Optional[InvoiceDataValidator] = None,
        db: Optional[AsyncSession] = None,
        activation: Optional[ActivationManager] = None,
        guard: Optional[DuplicateConfidenceGuard] = None,
        locks: Optional[KeyedLocks] = None,
        ai_timeout_seconds: Optional[float] = None,
        low_confidence_threshold: Optional[float] = None,
    ):
        self.text_extractor = text_extractor
        self.ai_extractor = ai_extractor
        self.cache = cache
        self.prompt_validator = prompt_validator or PromptStructureValidator()
        self.data_validator = data_validator or InvoiceDataValidator()
        self.db = db
        self.activation = activation
        self.guard = guard
        self.locks = locks or KeyedLocks()
        self.ai_timeout_seconds = ai_timeout_seconds or settings.AI_EXTRACTION_TIMEOUT_SECONDS
        self.low_confidence_threshold = (
            settings.LOW_CONFIDENCE_THRESHOLD
            if low_confidence_threshold is None
            else low_confidence_threshold
        )

    async def run_test(
        self,
        prompt_text: str,
        temp_file_id: str,
        prompt_id: Optional[uuid.UUID] = None,
        custom_prompt_used: bool = False,
    ) -> ExtractionResult:
        """
        Run prompt text against a cached test document.

        Nothing is persisted. A failed attempt leaves the cached text in
        place so the operator can retry with different prompt text.
        """
        if self.cache is None:
            raise RuntimeError("Test extraction requires a temporary document cache")

        attempt = ExtractionAttempt("test")
        try:
            session = await self.cache.get(temp_file_id, owner_prompt_id=prompt_id)
            attempt.advance(AttemptState.TEXT_RESOLVED)

            self.prompt_validator.validate(prompt_text)
            attempt.advance(AttemptState.PROMPT_VALIDATED)

            extraction = await self._invoke_ai(attempt, session.extracted_content, prompt_text)
            attempt.advance(AttemptState.SUCCEEDED)

            low_confidence = extraction.confidence_score < self.low_confidence_threshold
            result = ExtractionResult(
                success=True,
                state=attempt.state,
                extracted_data=extraction.extracted_data,
                confidence_score=extraction.confidence_score,
                processing_time_ms=attempt.processing_time_ms,
                low_confidence=low_confidence,
                warnings=self.data_validator.validate(extraction.extracted_data).warnings,
            )
        except InvoiceProcessingError as e:
            result = self._failure(attempt, e)

        result.prompt_id = prompt_id
        result.custom_prompt_used = custom_prompt_used
        self._log_outcome("test_run", attempt, result, prompt_id=str(prompt_id) if prompt_id else None)
        return result

    async def run_production(
        self, vendor_id: uuid.UUID, raw_bytes: bytes, filename: str
    ) -> ExtractionResult:
        """
        Extract and persist an uploaded invoice for a vendor.

        Uses the vendor's active prompt, falling back to the base template and
        then to the built-in default prompt.
        """
        if self.db is None or self.activation is None or self.guard is None:
            raise RuntimeError("Production extraction requires db, activation and guard")

        attempt = ExtractionAttempt("production")
        prompt_id = None
        try:
            vendor = await self.db.get(Vendor, vendor_id)
            if vendor is None or not vendor.active:
                raise VendorNotFound(f"Vendor '{vendor_id}' not found or inactive")

            extracted_text = await self.text_extractor.extract_text(raw_bytes, filename)
            attempt.advance(AttemptState.TEXT_RESOLVED)

            prompt_id, prompt_text = await self._resolve_production_prompt(vendor)
            self.prompt_validator.validate(prompt_text)
            attempt.advance(AttemptState.PROMPT_VALIDATED)

            extraction = await self._invoke_ai(attempt, extracted_text.text, prompt_text)

            # Check and insert together so identical concurrent uploads can't both persist
            async with self.locks.acquire(vendor_key(vendor.id)):
                verdict = await self.guard.check(
                    vendor.id, extraction.extracted_data, extraction.confidence_score
                )
                warnings = verdict.warnings + self.data_validator.validate(
                    extraction.extracted_data
                ).warnings
                invoice = await self._persist_invoice(
                    vendor, prompt_id, filename, extracted_text.document_type, extraction, verdict
                )
            attempt.advance(AttemptState.SUCCEEDED)

            result = ExtractionResult(
                success=True,
                state=attempt.state,
                extracted_data=extraction.extracted_data,
                confidence_score=extraction.confidence_score,
                processing_time_ms=attempt.processing_time_ms,
                low_confidence=verdict.low_confidence,
                warnings=warnings,
                invoice=InvoiceSummary(
                    id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    customer_name=invoice.customer_name,
                    total_amount=invoice.total_amount,
                    line_items_count=len(invoice.line_items),
                    confidence_score=invoice.confidence_score,
                    review_status=invoice.review_status,
                    file_type=invoice.file_type,
                    vendor_name=vendor.display_name,
                ),
            )
        except DuplicateDetected as e:
            # Surface what was extracted so the operator can see the clash
            result = self._failure(attempt, e)
            result.extracted_data = e.extracted_data
        except InvoiceProcessingError as e:
            result = self._failure(attempt, e)

        result.prompt_id = prompt_id
        self._log_outcome(
            "ingestion",
            attempt,
            result,
            vendor_id=str(vendor_id),
            filename=filename,
            invoice_id=str(result.invoice.id) if result.invoice else None,
        )
        return result

    async def _invoke_ai(
        self, attempt: ExtractionAttempt, document_text: str, prompt_text: str
    ) -> AIExtraction:
        """Call the AI collaborator once, with a timeout. No automatic retry."""
        attempt.advance(AttemptState.AI_INVOKED)
        start_time = time.perf_counter()
        try:
            extraction = await asyncio.wait_for(
                self.ai_extractor.extract_invoice(document_text, prompt_text),
                timeout=self.ai_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamExtractionFailed(
                f"Extraction service timed out after {self.ai_timeout_seconds:g}s"
            ) from e
        except InvoiceProcessingError:
            raise
        except Exception as e:
            logger.error("Extraction service error: %s", e, exc_info=True)
            raise UpstreamExtractionFailed(f"Extraction service error: {e}") from e
        finally:
            attempt.processing_time_ms = int((time.perf_counter() - start_time) * 1000)

        score = extraction.confidence_score
        if not isinstance(score, (int, float)) or not 0.0 <= score <= 1.0:
            raise UpstreamExtractionFailed(
                f"Extraction service returned an invalid confidence score: {score!r}"
            )
        attempt.extraction = extraction
        return extraction

    async def _resolve_production_prompt(self, vendor: Vendor) -> Tuple[Optional[uuid.UUID], str]:
        active = await self.activation.get_active(vendor.id)
        if active is not None:
            return active.id, active.prompt_text

        template = await get_base_template(self.db)
        if template is not None:
            logger.info("Vendor %s has no active prompt, using %s", vendor.name, template.prompt_name)
            return template.id, template.prompt_text

        logger.info("Vendor %s has no active prompt, using built-in default", vendor.name)
        return None, DEFAULT_EXTRACTION_PROMPT

    async def _persist_invoice(
        self,
        vendor: Vendor,
        prompt_id: Optional[uuid.UUID],
        filename: str,
        document_type: str,
        extraction: AIExtraction,
        verdict: GuardVerdict,
    ) -> Invoice:
        """Insert the invoice and its line items in one transaction."""
        vendor_name = vendor.name
        data = extraction.extracted_data
        header = data.get("invoice_header") or {}
        currency = header.get("currency")

        invoice = Invoice(
            vendor_id=vendor.id,
            prompt_id=prompt_id,
            invoice_number=to_text(header.get("invoice_number"), 100),
            customer_name=to_text(header.get("customer_name"), 255),
            invoice_date=to_date(header.get("invoice_date")),
            due_date=to_date(header.get("due_date")),
            currency=str(currency).strip().upper()[:3] if currency else "USD",
            subtotal=to_decimal(header.get("subtotal")),
            tax_amount=to_decimal(header.get("tax_amount", header.get("total_taxes"))),
            total_amount=to_decimal(header.get("total_amount")),
            file_type=document_type,
            original_filename=filename[:255],
            confidence_score=extraction.confidence_score,
            review_status=(
                ReviewStatus.NEEDS_REVIEW if verdict.low_confidence else ReviewStatus.APPROVED
            ),
            review_notes="; ".join(verdict.warnings) or None,
            extracted_data=data,
        )

        items = [item for item in data.get("line_items") or [] if isinstance(item, dict)]
        invoice.line_items = [
            LineItem(
                line_number=_line_number(item.get("line_number"), index),
                description=to_text(item.get("description")),
                category=to_text(item.get("category"), 100),
                quantity=to_decimal(item.get("quantity"), QUANTITY_PLACES),
                unit_of_measure=to_text(item.get("unit_of_measure"), 50),
                unit_price=to_decimal(item.get("unit_price"), UNIT_PRICE_PLACES),
                subtotal=to_decimal(item.get("subtotal")),
                tax_amount=to_decimal(item.get("tax_amount")),
                total_amount=to_decimal(item.get("total_amount")),
                sku=to_text(item.get("sku") or item.get("product_code"), 100),
            )
            for index, item in enumerate(items, start=1)
        ]

        self.db.add(invoice)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to store invoice for vendor %s: %s", vendor_name, e, exc_info=True)
            await self.db.rollback()
            raise PersistenceFailed(
                "Extracted invoice could not be stored",
                {"invoice_number": invoice.invoice_number},
            ) from e

        logger.info(
            "Stored invoice %s (%s) for vendor %s with %d line items",
            invoice.id,
            invoice.invoice_number,
            vendor_name,
            len(invoice.line_items),
        )
        return invoice

    def _failure(self, attempt: ExtractionAttempt, error: InvoiceProcessingError) -> ExtractionResult:
        attempt.fail(error.kind)
        extraction = attempt.extraction
        return ExtractionResult(
            success=False,
            state=attempt.state,
            confidence_score=extraction.confidence_score if extraction else None,
            processing_time_ms=attempt.processing_time_ms,
            error=ExtractionErrorInfo(**error.to_dict()),
        )

    @staticmethod
    def _log_outcome(event_type: str, attempt: ExtractionAttempt, result: ExtractionResult, **kwargs):
        log_extraction_event(
            event_type,
            path=attempt.path,
            success=result.success,
            error_kind=attempt.failure_kind,
            processing_time_ms=result.processing_time_ms,
            confidence_score=result.confidence_score,
            low_confidence=result.low_confidence,
            **kwargs,
        )


def _line_number(value, index: int) -> int:
    """AI line numbers come back as ints, numeric strings or junk."""
    if isinstance(value, bool):
        return index
    try:
        number = int(value)
    except (TypeError, ValueError):
        return index
    return number if number > 0 else index
