"""Custom exceptions for invoice extraction and prompt management.

Every error carries a stable machine-readable ``kind`` and the HTTP status it
maps to, so callers branch on the kind instead of parsing messages.
"""

from typing import Any, Dict, List, Optional


class InvoiceProcessingError(Exception):
    """Base exception for invoice processing."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class PromptValidationFailed(InvoiceProcessingError):
    """Raised when prompt text misses required extraction concepts."""

    kind = "prompt_validation_failed"
    status_code = 400

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            f"Prompt is missing required concepts: {', '.join(self.missing)}",
            {"missing": self.missing},
        )


class ExpiredOrMissingContent(InvoiceProcessingError):
    """Raised when a temp file handle is unknown or expired."""

    kind = "expired_or_missing_content"
    status_code = 404


class UnsupportedDocument(InvoiceProcessingError):
    """Raised when text cannot be extracted from a document."""

    kind = "unsupported_document"
    status_code = 502


class UpstreamExtractionFailed(InvoiceProcessingError):
    """Raised when the AI extraction service fails or times out."""

    kind = "upstream_extraction_failed"
    status_code = 502


class DuplicateDetected(InvoiceProcessingError):
    """Raised when an extracted invoice already exists for the vendor."""

    kind = "duplicate_detected"
    status_code = 409

    def __init__(
        self,
        message: str,
        extracted_data: Dict[str, Any],
        duplicate_of: Optional[str] = None,
    ):
        self.extracted_data = extracted_data
        self.duplicate_of = duplicate_of
        super().__init__(message, {"duplicate_of": duplicate_of})


class InvalidActivationTarget(InvoiceProcessingError):
    """Raised when activating a missing, deleted or template prompt."""

    kind = "invalid_activation_target"
    status_code = 409


class PromptInUse(InvoiceProcessingError):
    """Raised when deleting an active prompt."""

    kind = "prompt_in_use"
    status_code = 409


class PromptNotFound(InvoiceProcessingError):
    """Raised when a prompt does not exist."""

    kind = "prompt_not_found"
    status_code = 404


class RevisionConflict(InvoiceProcessingError):
    """Raised when revising a prompt that is no longer the head of its chain."""

    kind = "revision_conflict"
    status_code = 409


class InvalidPromptDefinition(InvoiceProcessingError):
    """Raised when prompt fields are inconsistent."""

    kind = "invalid_prompt_definition"
    status_code = 400


class InvalidUpload(InvoiceProcessingError):
    """Raised when an uploaded file has a bad type or size."""

    kind = "invalid_upload"
    status_code = 400


class VendorNotFound(InvoiceProcessingError):
    """Raised when a vendor does not exist or is inactive."""

    kind = "vendor_not_found"
    status_code = 404


class VendorExists(InvoiceProcessingError):
    """Raised when registering a vendor name twice."""

    kind = "vendor_exists"
    status_code = 409


class PersistenceFailed(InvoiceProcessingError):
    """Raised when an extracted invoice cannot be stored."""

    kind = "persistence_failed"
    status_code = 500


class DocumentCacheUnavailable(InvoiceProcessingError):
    """Raised when the test document cache backend cannot be reached."""

    kind = "document_cache_unavailable"
    status_code = 503
