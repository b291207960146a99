"""
Document processing service.

Handles upload validation and plain-text extraction from PDF and HTML
invoices. PDF parsing runs in a thread pool so it doesn't block the event loop.
"""

import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from html.parser import HTMLParser
from pathlib import Path
from typing import List, Optional

import fitz  # PyMuPDF

from invoice_processing.core.config import settings

from ..exceptions import InvalidUpload, UnsupportedDocument, UpstreamExtractionFailed

logger = logging.getLogger(__name__)

# Thread pool executor for CPU-intensive operations
_executor = ThreadPoolExecutor(max_workers=4)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ExtractedText:
    """Plain text pulled from a document."""

    text: str
    document_type: str
    page_count: int = 1


class _TextCollector(HTMLParser):
    """Collects visible text, skipping script and style blocks."""

    SKIPPED_TAGS = {"script", "style", "head", "noscript"}
    BLOCK_TAGS = {"p", "div", "br", "tr", "li", "h1", "h2", "h3", "h4", "table", "section"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.parts: List[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self.SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self.parts.append("\n")

    def handle_endtag(self, tag):
        if tag in self.SKIPPED_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag in ("td", "th"):
            self.parts.append(" ")

    def handle_data(self, data):
        if not self._skip_depth:
            self.parts.append(data)


class DocumentProcessor:
    """
    Turns uploaded invoices into plain text.

    Responsibilities:
    - Validate file extension, MIME type and size
    - Extract text from PDFs (PyMuPDF) and HTML
    - Bound text extraction with a timeout
    """

    ALLOWED_EXTENSIONS = {".pdf", ".html", ".htm"}
    ALLOWED_MIME_TYPES = {
        "application/pdf",
        "text/html",
        "application/octet-stream",  # some browsers send this for local files
    }
    MAX_PDF_PAGES = 50

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds or settings.TEXT_EXTRACTION_TIMEOUT_SECONDS

    def validate_upload(
        self,
        filename: Optional[str],
        content_type: Optional[str],
        size_bytes: int,
        max_size_mb: Optional[int] = None,
    ) -> str:
        """
        Validate an upload and return its document type ("pdf" or "html").

        The extension must always be allowed; a declared MIME type must be
        allowed too.

        Raises:
            InvalidUpload: Bad extension, MIME type, size, or empty file
        """
        max_size_mb = max_size_mb or settings.MAX_UPLOAD_SIZE_MB
        ext = Path(filename or "").suffix.lower()
        if ext not in self.ALLOWED_EXTENSIONS:
            raise InvalidUpload(
                f"File type '{ext or filename}' not allowed. "
                f"Allowed types: {', '.join(sorted(self.ALLOWED_EXTENSIONS))}"
            )

        mime = (content_type or "").split(";")[0].strip().lower()
        if mime and mime not in self.ALLOWED_MIME_TYPES:
            raise InvalidUpload(f"MIME type '{mime}' not allowed")

        document_type = self.document_type_for(filename)
        if mime == "application/pdf" and document_type != "pdf":
            raise InvalidUpload(f"MIME type '{mime}' does not match file extension '{ext}'")
        if mime == "text/html" and document_type != "html":
            raise InvalidUpload(f"MIME type '{mime}' does not match file extension '{ext}'")

        if size_bytes == 0:
            raise InvalidUpload("File is empty")
        size_mb = size_bytes / (1024 * 1024)
        if size_mb > max_size_mb:
            raise InvalidUpload(
                f"File size {size_mb:.1f}MB exceeds limit of {max_size_mb}MB",
                {"size_bytes": size_bytes, "max_size_mb": max_size_mb},
            )

        return document_type

    @staticmethod
    def document_type_for(filename: Optional[str]) -> str:
        ext = Path(filename or "").suffix.lower()
        if ext == ".pdf":
            return "pdf"
        if ext in (".html", ".htm"):
            return "html"
        raise UnsupportedDocument(f"Cannot extract text from '{filename}'")

    async def extract_text(self, raw_bytes: bytes, filename: str) -> ExtractedText:
        """
        Extract plain text from a document.

        Raises:
            UnsupportedDocument: Unknown format, unparseable file, or no text
            UpstreamExtractionFailed: Extraction exceeded the timeout
        """
        document_type = self.document_type_for(filename)
        loop = asyncio.get_running_loop()

        if document_type == "pdf":
            job = loop.run_in_executor(_executor, self._extract_pdf_text, raw_bytes)
        else:
            job = loop.run_in_executor(_executor, self._extract_html_text, raw_bytes)

        try:
            text, page_count = await asyncio.wait_for(job, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise UpstreamExtractionFailed(
                f"Text extraction timed out after {self.timeout_seconds:.0f}s"
            ) from e

        if not text.strip():
            raise UnsupportedDocument(f"No text could be extracted from '{filename}'")

        logger.debug(
            "Extracted %d chars from %s (%s, %d pages)",
            len(text),
            filename,
            document_type,
            page_count,
        )
        return ExtractedText(text=text, document_type=document_type, page_count=page_count)

    def _extract_pdf_text(self, pdf_bytes: bytes):
        """Synchronous PDF text extraction for executor."""
        try:
            with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
                if doc.page_count > self.MAX_PDF_PAGES:
                    logger.warning(
                        "PDF truncated to %d of %d pages", self.MAX_PDF_PAGES, doc.page_count
                    )
                pages = [
                    doc[i].get_text("text")
                    for i in range(min(doc.page_count, self.MAX_PDF_PAGES))
                ]
                return "\n".join(pages).strip(), len(pages)
        except (fitz.FileDataError, RuntimeError, ValueError) as e:
            logger.error("PDF text extraction failed: %s", e)
            raise UnsupportedDocument(f"Failed to read PDF: {e}") from e

    def _extract_html_text(self, html_bytes: bytes):
        """Synchronous HTML text extraction for executor."""
        collector = _TextCollector()
        collector.feed(html_bytes.decode("utf-8", errors="replace"))
        collector.close()

        lines = (_WHITESPACE.sub(" ", line).strip() for line in "".join(collector.parts).splitlines())
        return "\n".join(line for line in lines if line), 1
