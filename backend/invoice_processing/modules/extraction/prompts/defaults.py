"""
Built-in extraction prompts.

DEFAULT_EXTRACTION_PROMPT is used for production ingestion when a vendor has
no active prompt and the base template has been deleted. The base template is
seeded on first run as a vendor-agnostic starting point for new prompts.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.models.extraction_prompt import ExtractionPrompt

logger = logging.getLogger(__name__)

BASE_TEMPLATE_NAME = "Base Template"

# Fixed id so seeding stays idempotent across restarts
BASE_TEMPLATE_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")

DEFAULT_EXTRACTION_PROMPT = """Please extract invoice data from the following document and return ONLY a valid JSON object with this exact structure:

{
  "invoice_header": {
    "invoice_number": "string",
    "customer_name": "string",
    "invoice_date": "YYYY-MM-DD",
    "due_date": "YYYY-MM-DD",
    "currency": "USD",
    "subtotal": 0.00,
    "tax_amount": 0.00,
    "total_amount": 0.00,
    "purchase_order_number": "string",
    "payment_terms": "string"
  },
  "line_items": [
    {
      "line_number": 1,
      "description": "string",
      "category": "string",
      "quantity": 1,
      "unit_of_measure": "string",
      "unit_price": 0.00,
      "tax_amount": 0.00,
      "total_amount": 0.00,
      "sku": "string"
    }
  ],
  "confidence_notes": "string"
}

Return ONLY the JSON object, no explanation or markdown formatting."""

BASE_TEMPLATE_PROMPT = """You are an invoice data extraction specialist. Extract the following information from the provided invoice and return it as a JSON object with two keys: "invoice_header" and "line_items".

**invoice_header fields:**
- invoice_number (string, required)
- customer_name (string, required)
- invoice_date (YYYY-MM-DD format)
- due_date (YYYY-MM-DD format)
- currency (ISO 4217 code, e.g. "USD", "CAD")
- subtotal (decimal number)
- tax_amount (decimal number)
- total_amount (decimal number)
- purchase_order_number (string)
- payment_terms (string)

**line_items (array), each with:**
- line_number (integer)
- description (string)
- category (string)
- quantity (decimal number)
- unit_of_measure (string)
- unit_price (decimal number)
- tax_amount (decimal number)
- total_amount (decimal number)
- sku (string)

Use null for any field that is not present in the document. If any value is uncertain, explain it in a "confidence_notes" string.

Return ONLY the JSON object, no explanation or markdown formatting."""


async def seed_base_template(db: AsyncSession):
    """
    Seed the base template prompt on first run.

    Only creates the template when it doesn't already exist, so a deleted or
    revised template is left alone.
    """
    existing = await db.get(ExtractionPrompt, BASE_TEMPLATE_ID)
    if existing:
        return

    db.add(
        ExtractionPrompt(
            id=BASE_TEMPLATE_ID,
            vendor_id=None,
            prompt_name=BASE_TEMPLATE_NAME,
            prompt_text=BASE_TEMPLATE_PROMPT,
            version=1,
            chain_root_id=BASE_TEMPLATE_ID,
            is_template=True,
            is_active=False,
            created_by="system",
        )
    )
    await db.commit()
    logger.info("Seeded prompt template: %s", BASE_TEMPLATE_NAME)


async def get_base_template(db: AsyncSession) -> Optional[ExtractionPrompt]:
    """Latest non-deleted version of the base template chain, if any."""
    stmt = (
        select(ExtractionPrompt)
        .where(
            ExtractionPrompt.chain_root_id == BASE_TEMPLATE_ID,
            ExtractionPrompt.deleted_at.is_(None),
        )
        .order_by(ExtractionPrompt.version.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()
