"""
Anthropic Messages API client for structured invoice extraction.

Sends the prompt and document text, parses the JSON reply and scores how
complete the extraction is.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from invoice_processing.core.config import settings

from ..exceptions import UpstreamExtractionFailed
from ..protocols import AIExtraction

logger = logging.getLogger(__name__)


def parse_extraction_response(response_text: str) -> Dict[str, Any]:
    """
    Parse the model's reply into an invoice payload.

    Strips markdown fences and any prose around the outermost JSON object.

    Raises:
        UpstreamExtractionFailed: Not JSON, or missing invoice_header/line_items
    """
    cleaned = response_text.replace("```json", "").replace("```", "").strip()

    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        cleaned = cleaned[first_brace:last_brace + 1]

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse extraction response: %s", e)
        raise UpstreamExtractionFailed(
            "Failed to parse extraction response as JSON",
            {"parse_error": str(e)},
        ) from e

    if not isinstance(parsed, dict):
        raise UpstreamExtractionFailed("Extraction response is not a JSON object")

    if not isinstance(parsed.get("invoice_header"), dict) or not isinstance(
        parsed.get("line_items"), list
    ):
        raise UpstreamExtractionFailed(
            "Invalid response structure: expected invoice_header and line_items",
            {"keys": sorted(parsed.keys())},
        )

    return parsed


def completeness_confidence(extracted_data: Dict[str, Any]) -> float:
    """
    Score an extraction by the completeness of its key fields.

    Starts at 1.0 and deducts for each missing field; clamped to [0, 1].
    """
    score = 1.0
    header = extracted_data.get("invoice_header") or {}

    if not header.get("invoice_number"):
        score -= 0.3
    if not header.get("customer_name"):
        score -= 0.3
    if not header.get("invoice_date"):
        score -= 0.1
    if not header.get("total_amount"):
        score -= 0.1
    if not extracted_data.get("line_items"):
        score -= 0.2

    notes = extracted_data.get("confidence_notes")
    if isinstance(notes, str) and "uncertain" in notes.lower():
        score -= 0.1

    return round(max(0.0, min(1.0, score)), 2)


class AnthropicExtractionClient:
    """AI extraction collaborator backed by the Anthropic Messages API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.base_url = (base_url or settings.ANTHROPIC_BASE_URL).rstrip("/")
        self.model = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or settings.ANTHROPIC_MAX_TOKENS
        self.timeout_seconds = timeout_seconds or settings.AI_EXTRACTION_TIMEOUT_SECONDS
        self._session: Optional[aiohttp.ClientSession] = None

    def _create_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": settings.ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers=self._create_headers(),
            )
            logger.debug("Created new HTTP session for Anthropic")
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _create_message(self, content: str, max_tokens: int) -> str:
        """POST a single-turn message and return the reply text."""
        if not self.api_key:
            raise UpstreamExtractionFailed("ANTHROPIC_API_KEY is not configured")

        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": content}],
        }

        try:
            session = await self._get_session()
            async with session.post(f"{self.base_url}/v1/messages", json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(
                        "Anthropic API error - Status %s: %s", response.status, error_text[:500]
                    )
                    raise UpstreamExtractionFailed(
                        f"Extraction service returned HTTP {response.status}: {error_text[:300]}",
                        {"status": response.status},
                    )
                data = await response.json()
        except aiohttp.ClientError as e:
            logger.error("Anthropic request error: %s", e)
            raise UpstreamExtractionFailed(
                f"Network error communicating with extraction service: {e}"
            ) from e

        blocks = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        if not text:
            raise UpstreamExtractionFailed("Extraction service returned an empty response")
        return text

    async def extract_invoice(self, document_text: str, prompt_text: str) -> AIExtraction:
        start_time = time.time()
        if settings.LOG_EXTRACTION_PROMPTS:
            logger.info("Extraction prompt: %s", prompt_text)

        response_text = await self._create_message(
            f"{prompt_text}\n\nDocument content:\n{document_text}", self.max_tokens
        )
        extracted_data = parse_extraction_response(response_text)
        confidence = completeness_confidence(extracted_data)

        logger.info(
            "Anthropic extraction completed in %.0fms (%d line items, confidence %.2f)",
            (time.time() - start_time) * 1000,
            len(extracted_data["line_items"]),
            confidence,
        )
        return AIExtraction(
            extracted_data=extracted_data, confidence_score=confidence, model=self.model
        )

    async def test_connection(self) -> Dict[str, Any]:
        """Round-trip a tiny request to check credentials and connectivity"""
        start_time = time.time()
        try:
            reply = await self._create_message(
                'Respond with "connection successful"', max_tokens=50
            )
        except UpstreamExtractionFailed as e:
            return {"status": "unavailable", "model": self.model, "error": e.message}

        return {
            "status": "healthy" if "successful" in reply.lower() else "degraded",
            "model": self.model,
            "latency_ms": int((time.time() - start_time) * 1000),
        }
