"""
Logging configuration with automatic sensitive data redaction.

Invoice documents carry customer data, so besides secrets the redactor
truncates any raw document text that ends up in a log event.
"""

import logging
import re
import sys
from typing import Any, Dict, List, Set
import structlog
from structlog.stdlib import LoggerFactory

from invoice_processing.core.config import settings


class SensitiveDataRedactor:
    """
    Redacts sensitive data from log entries.

    Handles:
    - Exact key matches (api keys, authorization headers, etc.)
    - Pattern-based key matches (contains 'secret', 'token', etc.)
    - Raw document text, which is truncated to a short preview
    - Nested dictionaries and lists
    """

    # Keys that should be fully redacted (exact match, case-insensitive)
    FULLY_REDACTED_KEYS: Set[str] = {
        "password",
        "secret",
        "authorization",
        "x-api-key",
        "x_api_key",
        "anthropic_api_key",
        "cookie",
        "database_url",
        "bank_account",
        "iban",
        "routing_number",
    }

    # Key patterns that should be fully redacted (substring match)
    REDACTED_KEY_PATTERNS: List[str] = [
        "password",
        "secret",
        "token",
        "credential",
    ]

    # Keys that should be partially redacted (show last 4 chars)
    PARTIALLY_REDACTED_KEYS: Set[str] = {
        "api_key",
        "apikey",
        "temp_file_id",
    }

    # Keys holding raw document text; only a preview is kept
    DOCUMENT_TEXT_KEYS: Set[str] = {
        "extracted_content",
        "document_text",
        "raw_response",
    }
    DOCUMENT_PREVIEW_CHARS = 80

    VALUE_PATTERNS = {
        "anthropic_key": re.compile(r"sk-ant-[a-zA-Z0-9_-]{10,}"),
        "bearer": re.compile(r"Bearer\s+[a-zA-Z0-9._-]+", re.IGNORECASE),
    }

    REDACTED_PLACEHOLDER = "[REDACTED]"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._fully_redacted_lower = {k.lower() for k in self.FULLY_REDACTED_KEYS}
        self._partially_redacted_lower = {k.lower() for k in self.PARTIALLY_REDACTED_KEYS}

    def redact(self, data: Any, key: str = None) -> Any:
        """
        Recursively redact sensitive data.

        Args:
            data: The data to redact (can be dict, list, or primitive)
            key: The key name if this data is a value in a dict

        Returns:
            Redacted version of the data
        """
        if not self.enabled or data is None:
            return data

        if key:
            key_lower = key.lower()

            if key_lower in self._fully_redacted_lower:
                return self.REDACTED_PLACEHOLDER

            for pattern in self.REDACTED_KEY_PATTERNS:
                if pattern in key_lower:
                    return self.REDACTED_PLACEHOLDER

            if key_lower in self._partially_redacted_lower:
                return self._partial_redact(data)

            if key_lower in self.DOCUMENT_TEXT_KEYS and isinstance(data, str):
                return self._truncate_document(data)

        if isinstance(data, dict):
            return {k: self.redact(v, k) for k, v in data.items()}

        if isinstance(data, (list, tuple)):
            return [self.redact(item) for item in data]

        if isinstance(data, str):
            return self._redact_string_value(data)

        return data

    def _partial_redact(self, value: Any) -> str:
        """Show only the last 4 characters of a value."""
        value_str = str(value)
        if len(value_str) > 4:
            return f"****{value_str[-4:]}"
        return "****"

    def _truncate_document(self, value: str) -> str:
        if len(value) <= self.DOCUMENT_PREVIEW_CHARS:
            return value
        return f"{value[:self.DOCUMENT_PREVIEW_CHARS]}... [{len(value)} chars]"

    def _redact_string_value(self, value: str) -> str:
        """Check string values for sensitive patterns and redact them."""
        if not value or len(value) < 10:
            return value

        result = self.VALUE_PATTERNS["bearer"].sub("Bearer [REDACTED]", value)
        result = self.VALUE_PATTERNS["anthropic_key"].sub("[API_KEY_REDACTED]", result)
        return result


_redactor = SensitiveDataRedactor()


def sensitive_data_redactor_processor(
    logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Structlog processor that redacts sensitive data from log events.

    Runs before the final renderer so sensitive data never reaches log output.
    """
    return _redactor.redact(event_dict)


def setup_logging() -> None:
    """Setup structured logging with automatic sensitive data redaction."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sensitive_data_redactor_processor,
            structlog.processors.JSONRenderer()
            if settings.LOG_FORMAT == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper()),
    )

    # Set specific loggers to reduce noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger"""
    return structlog.get_logger(name)


def log_extraction_event(
    event_type: str,
    path: str,
    success: bool,
    error_kind: str = None,
    **kwargs: Any,
) -> None:
    """Log the outcome of an extraction attempt (test or production path)"""
    logger = get_logger("extraction")

    log_data = {
        "event_type": event_type,
        "path": path,
        "success": success,
        "error_kind": error_kind,
        **kwargs,
    }

    if success:
        logger.info("Extraction attempt finished", **log_data)
    elif error_kind == "upstream_extraction_failed":
        logger.error("Extraction attempt failed", **log_data)
    else:
        logger.warning("Extraction attempt rejected", **log_data)

