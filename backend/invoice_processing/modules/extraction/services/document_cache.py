"""
Temporary document cache for prompt testing.

Text is extracted from a test document once and kept in Redis under an
unguessable handle, so operators can iterate on prompt text without
re-uploading. Entries are written with SETEX; once the TTL lapses Redis drops
the key and a lookup fails as if the handle never existed. Every worker
process sees the same entries.
"""

import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from invoice_processing.core.config import settings

from ..exceptions import DocumentCacheUnavailable, ExpiredOrMissingContent
from ..protocols import TextExtractorProtocol

logger = logging.getLogger(__name__)

MISSING_MESSAGE = "Test file not found or expired. Please upload the document again."


@dataclass
class TestSession:
    """Cached text of one uploaded test document."""

    __test__ = False  # not a pytest test class

    temp_file_id: str
    extracted_content: str
    document_type: str
    filename: str
    created_at: datetime
    expires_at: datetime
    owner_prompt_id: Optional[uuid.UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temp_file_id": self.temp_file_id,
            "extracted_content": self.extracted_content,
            "document_type": self.document_type,
            "filename": self.filename,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "owner_prompt_id": str(self.owner_prompt_id) if self.owner_prompt_id else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestSession":
        owner = data.get("owner_prompt_id")
        return cls(
            temp_file_id=data["temp_file_id"],
            extracted_content=data["extracted_content"],
            document_type=data["document_type"],
            filename=data["filename"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            owner_prompt_id=uuid.UUID(owner) if owner else None,
        )


class TemporaryDocumentCache:
    """
    Redis-backed cache of extracted test documents.

    Key design decisions:
    - Handles come from secrets.token_urlsafe and act as capability tokens
    - A handle bound to a prompt can only be read through that prompt
    - Expiry is left to Redis TTLs, so nothing needs purging here
    """

    KEY_PREFIX = "test_document"

    def __init__(
        self,
        text_extractor: TextExtractorProtocol,
        redis_client: Redis,
        ttl_seconds: Optional[int] = None,
    ):
        self.text_extractor = text_extractor
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or settings.TEST_FILE_TTL_SECONDS

    @classmethod
    def from_url(
        cls,
        text_extractor: TextExtractorProtocol,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> "TemporaryDocumentCache":
        """Build a cache on a pooled client. No connection is made until first use."""
        client = redis.from_url(
            redis_url or settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        return cls(text_extractor, client, ttl_seconds=ttl_seconds)

    def _cache_key(self, temp_file_id: str) -> str:
        return f"{self.KEY_PREFIX}:{temp_file_id}"

    async def put(
        self,
        raw_bytes: bytes,
        filename: str,
        owner_prompt_id: Optional[uuid.UUID] = None,
    ) -> TestSession:
        """
        Extract text from a document and cache it.

        Raises:
            UnsupportedDocument: If the text extractor cannot parse the file
            DocumentCacheUnavailable: If Redis cannot be reached
        """
        extracted = await self.text_extractor.extract_text(raw_bytes, filename)

        now = datetime.now(timezone.utc)
        session = TestSession(
            temp_file_id=secrets.token_urlsafe(32),
            extracted_content=extracted.text,
            document_type=extracted.document_type,
            filename=filename,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            owner_prompt_id=owner_prompt_id,
        )

        try:
            await self.redis_client.setex(
                self._cache_key(session.temp_file_id),
                self.ttl_seconds,
                json.dumps(session.to_dict()),
            )
        except RedisError as e:
            logger.error("Failed to cache test document %s: %s", filename, e)
            raise DocumentCacheUnavailable("Test document cache is unavailable") from e

        logger.info(
            "Cached test document %s (%s, %d chars) for %ds",
            filename,
            session.document_type,
            len(session.extracted_content),
            self.ttl_seconds,
        )
        return session

    async def get(
        self, temp_file_id: str, owner_prompt_id: Optional[uuid.UUID] = None
    ) -> TestSession:
        """
        Look up a cached document.

        Raises:
            ExpiredOrMissingContent: Unknown handle, expired entry, or an
                entry owned by a different prompt
            DocumentCacheUnavailable: If Redis cannot be reached
        """
        try:
            value = await self.redis_client.get(self._cache_key(temp_file_id))
        except RedisError as e:
            logger.error("Failed to read test document %s: %s", temp_file_id[:8], e)
            raise DocumentCacheUnavailable("Test document cache is unavailable") from e

        if value is None:
            raise ExpiredOrMissingContent(MISSING_MESSAGE)

        session = TestSession.from_dict(json.loads(value))
        if (
            owner_prompt_id is not None
            and session.owner_prompt_id is not None
            and session.owner_prompt_id != owner_prompt_id
        ):
            # Same message as a miss; don't reveal that the handle exists
            raise ExpiredOrMissingContent(MISSING_MESSAGE)

        return session

    async def discard(self, temp_file_id: str) -> bool:
        """Drop a cached document. Returns False if it was not cached."""
        try:
            deleted = await self.redis_client.delete(self._cache_key(temp_file_id))
        except RedisError as e:
            raise DocumentCacheUnavailable("Test document cache is unavailable") from e
        return deleted > 0

    async def close(self):
        await self.redis_client.aclose()
