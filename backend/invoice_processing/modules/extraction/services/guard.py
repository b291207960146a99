"""
Duplicate and confidence guard for production ingestion.

A duplicate aborts persistence; low confidence only flags the invoice for
review.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.core.config import settings
from invoice_processing.models.invoice import Invoice

from ..exceptions import DuplicateDetected
from .validators import to_date, to_decimal, to_text

logger = logging.getLogger(__name__)

_AMOUNT_FIELDS = {"total_amount"}
_DATE_FIELDS = {"invoice_date"}


@dataclass
class GuardVerdict:
    """Outcome of a guard check that did not block ingestion."""

    low_confidence: bool = False
    warnings: List[str] = field(default_factory=list)


class DuplicateConfidenceGuard:
    """
    Inspects extracted data before it is persisted.

    The duplicate key is vendor plus the configured header fields, compared
    exactly against invoices already stored for that vendor. Amounts are
    compared at cent precision.
    """

    def __init__(
        self,
        db: AsyncSession,
        key_fields: Optional[Sequence[str]] = None,
        low_confidence_threshold: Optional[float] = None,
    ):
        self.db = db
        self.key_fields = tuple(key_fields or settings.duplicate_key_fields)
        self.low_confidence_threshold = (
            settings.LOW_CONFIDENCE_THRESHOLD
            if low_confidence_threshold is None
            else low_confidence_threshold
        )

    async def check(
        self,
        vendor_id: uuid.UUID,
        extracted_data: Dict[str, Any],
        confidence_score: float,
    ) -> GuardVerdict:
        """
        Raises:
            DuplicateDetected: An invoice with the same key exists for the vendor
        """
        existing = await self.find_duplicate(vendor_id, extracted_data)
        if existing is not None:
            key = self.duplicate_key(extracted_data)
            logger.warning(
                "Duplicate invoice for vendor %s: %s matches %s", vendor_id, key, existing.id
            )
            raise DuplicateDetected(
                "Invoice already exists for this vendor "
                f"({', '.join(f'{k}={v}' for k, v in key.items())})",
                extracted_data=extracted_data,
                duplicate_of=str(existing.id),
            )

        verdict = GuardVerdict()
        if confidence_score < self.low_confidence_threshold:
            verdict.low_confidence = True
            verdict.warnings.append(
                f"Low confidence {confidence_score:.2f} "
                f"(threshold {self.low_confidence_threshold:.2f}); flagged for review"
            )
        return verdict

    def duplicate_key(self, extracted_data: Dict[str, Any]) -> Dict[str, Any]:
        """Normalized key values; None where the field is missing or unparseable."""
        header = extracted_data.get("invoice_header") or {}
        key = {}
        for name in self.key_fields:
            raw = header.get(name)
            if name in _AMOUNT_FIELDS:
                key[name] = to_decimal(raw)
            elif name in _DATE_FIELDS:
                key[name] = to_date(raw)
            else:
                # Cut to the column length, as the stored value was
                text = to_text(raw, Invoice.__table__.c[name].type.length)
                key[name] = text.upper() if text and name == "currency" else text
        return key

    async def find_duplicate(
        self, vendor_id: uuid.UUID, extracted_data: Dict[str, Any]
    ) -> Optional[Invoice]:
        key = self.duplicate_key(extracted_data)
        if any(value is None for value in key.values()):
            # An incomplete key can't identify an invoice; review catches it instead
            logger.debug("Skipping duplicate check, incomplete key: %s", key)
            return None

        stmt = (
            select(Invoice)
            .where(Invoice.vendor_id == vendor_id)
            .where(*[getattr(Invoice, name) == value for name, value in key.items()])
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
