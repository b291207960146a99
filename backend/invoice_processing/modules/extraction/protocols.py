"""
Collaborator protocols for the extraction pipeline.

The orchestrator and the temporary document cache depend on these
interfaces, not on PyMuPDF or the Anthropic client, so tests can inject
doubles.
"""

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Protocol

from .services.document_processor import ExtractedText


@dataclass
class AIExtraction:
    """Structured output of the AI extraction service."""

    extracted_data: Dict[str, Any]
    confidence_score: float
    model: str = ""


class TextExtractorProtocol(Protocol):
    """Protocol for the document-text extraction service"""

    @abstractmethod
    async def extract_text(self, raw_bytes: bytes, filename: str) -> ExtractedText:
        """
        Extract plain text from a document

        Raises:
            UnsupportedDocument: If the document cannot be parsed
        """
        ...


class AIExtractorProtocol(Protocol):
    """Protocol for the AI structured-extraction service"""

    @abstractmethod
    async def extract_invoice(self, document_text: str, prompt_text: str) -> AIExtraction:
        """
        Extract a structured invoice from document text

        Args:
            document_text: Plain text of the invoice
            prompt_text: Extraction instructions

        Returns:
            AIExtraction with invoice_header/line_items and a confidence in [0, 1]

        Raises:
            UpstreamExtractionFailed: On any service failure
        """
        ...
