"""
Extracted invoice validation.

Checks extracted invoice data against business rules before persistence.
Findings are warnings for the review queue; they never block ingestion.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
_CURRENCY_MARKS = re.compile(r"^[A-Za-z]{3}\s*|\s*[A-Za-z]{3}$|[$€£¥\s]")
_AMOUNT = re.compile(r"^-?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?$")


def to_decimal(value: Any, places: Decimal = CENTS) -> Optional[Decimal]:
    """
    Parse an amount such as 250, "250.00", "$1,250.00" or "USD 250.00".

    Anything else, including exponents and decimal-comma formats, is None
    rather than a guessed value.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    else:
        raw = _CURRENCY_MARKS.sub("", str(value))
        if not _AMOUNT.match(raw):
            return None
        raw = raw.replace(",", "")
    try:
        return Decimal(raw).quantize(places)
    except InvalidOperation:
        return None


def to_text(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    """Strip a value to text, cut to the column length; None if blank."""
    if value is None:
        return None
    text = str(value).strip()[:max_length]
    return text or None


def to_date(value: Any) -> Optional[date]:
    """Parse a YYYY-MM-DD date; None if missing or malformed."""
    if not value or not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


@dataclass
class ValidationResult:
    """Result of data validation."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0


class InvoiceDataValidator:
    """
    Validates extracted invoice data.

    Validation rules:
    - invoice_number and customer_name should be present
    - Dates must be YYYY-MM-DD and due_date must not precede invoice_date
    - Line item totals should add up to the invoice total within 1%
    """

    TOTAL_TOLERANCE = Decimal("0.01")

    def validate(self, data: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        header = data.get("invoice_header") or {}

        for required in ("invoice_number", "customer_name"):
            if not header.get(required):
                result.warnings.append(f"{required} is missing")

        self._validate_dates(header, result)
        self._validate_line_item_total(header, data.get("line_items") or [], result)

        if result.warnings:
            logger.debug("Invoice validation warnings: %s", result.warnings)
        return result

    def _validate_dates(self, header: Dict[str, Any], result: ValidationResult):
        parsed = {}
        for date_field in ("invoice_date", "due_date"):
            raw = header.get(date_field)
            if not raw:
                continue
            value = to_date(raw)
            if value is None:
                result.warnings.append(f"{date_field}: invalid date format '{raw}'")
            parsed[date_field] = value

        invoice_date = parsed.get("invoice_date")
        due_date = parsed.get("due_date")
        if invoice_date and due_date and due_date < invoice_date:
            result.warnings.append("due_date is before invoice_date")

    def _validate_line_item_total(
        self, header: Dict[str, Any], line_items: List[Dict[str, Any]], result: ValidationResult
    ):
        total = to_decimal(header.get("total_amount"))
        amounts = [to_decimal(item.get("total_amount")) for item in line_items if isinstance(item, dict)]
        amounts = [a for a in amounts if a is not None]
        if not total or not amounts:
            return

        line_sum = sum(amounts, Decimal("0"))
        if abs(line_sum - total) > abs(total) * self.TOTAL_TOLERANCE:
            result.warnings.append(
                f"Line item total {line_sum} does not match invoice total {total}"
            )
