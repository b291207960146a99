"""
Prompt structure validation.

Checks, before any AI call is spent, that prompt text asks for the concepts
an invoice record needs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..exceptions import PromptValidationFailed

logger = logging.getLogger(__name__)

# Concept name -> accepted spellings, matched case-insensitively as substrings.
# Totals are header-level fields, so mentioning them covers the header.
REQUIRED_PROMPT_CONCEPTS: Dict[str, Tuple[str, ...]] = {
    "invoice_header": ("invoice_header", "header", "total"),
    "line_items": ("line_items", "line items", "line_item"),
    "invoice_number": ("invoice_number", "invoice number"),
    "customer_name": ("customer_name", "customer name"),
}


@dataclass
class PromptCheck:
    """Result of a prompt structure check."""

    present: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing


class PromptStructureValidator:
    """Verifies that prompt text references every required extraction concept."""

    def __init__(self, concepts: Optional[Dict[str, Sequence[str]]] = None):
        self.concepts = dict(concepts or REQUIRED_PROMPT_CONCEPTS)

    def check(self, prompt_text: str) -> PromptCheck:
        text = (prompt_text or "").lower()
        result = PromptCheck()
        for concept, aliases in self.concepts.items():
            if any(alias.lower() in text for alias in aliases):
                result.present.append(concept)
            else:
                result.missing.append(concept)
        return result

    def validate(self, prompt_text: str) -> PromptCheck:
        """
        Raises:
            PromptValidationFailed: Listing missing concepts in declaration order
        """
        result = self.check(prompt_text)
        if not result.is_valid:
            logger.debug("Prompt rejected, missing concepts: %s", result.missing)
            raise PromptValidationFailed(result.missing)
        return result
