"""
Prompt store.

Prompts are append-only version chains. Editing never mutates a stored
prompt: revise() writes a new version linked to its parent, and delete() only
hides a prompt from listings so audit trails can still resolve it by id.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.core.locks import KeyedLocks, chain_key, vendor_key
from invoice_processing.db.database import utc_now
from invoice_processing.models.extraction_prompt import ExtractionPrompt
from invoice_processing.models.prompt_test_run import PromptTestRun
from invoice_processing.models.vendor import Vendor

from ..exceptions import (
    InvalidPromptDefinition,
    PromptInUse,
    PromptNotFound,
    RevisionConflict,
    VendorNotFound,
)
from ..schemas import ExtractionResult

logger = logging.getLogger(__name__)


class PromptStore:
    """
    Durable owner of prompt records and their version chains.

    Key design decisions:
    - Version numbers are assigned under a per-chain lock and backed by a
      unique (chain_root_id, version) constraint
    - Only the head of a chain can be revised, so versions stay gap-free
    - Deletion is soft and refused for the active prompt
    """

    def __init__(self, db: AsyncSession, locks: KeyedLocks):
        self.db = db
        self.locks = locks

    async def create(
        self,
        prompt_name: str,
        prompt_text: str,
        vendor_id: Optional[uuid.UUID] = None,
        is_template: bool = False,
        invoice_type: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ExtractionPrompt:
        """
        Start a new version chain.

        Raises:
            InvalidPromptDefinition: Empty text, or a template bound to a vendor
            VendorNotFound: Unknown vendor
        """
        self._check_text(prompt_text)
        if is_template and vendor_id is not None:
            raise InvalidPromptDefinition(
                "Templates are vendor-agnostic and cannot have a vendor_id"
            )
        if vendor_id is not None and not await self.db.get(Vendor, vendor_id):
            raise VendorNotFound(f"Vendor '{vendor_id}' not found")

        prompt_id = uuid.uuid4()
        prompt = ExtractionPrompt(
            id=prompt_id,
            vendor_id=vendor_id,
            prompt_name=prompt_name,
            prompt_text=prompt_text,
            invoice_type=invoice_type,
            version=1,
            parent_prompt_id=None,
            chain_root_id=prompt_id,
            is_template=is_template,
            is_active=False,
            created_by=created_by or "system",
        )

        self.db.add(prompt)
        await self.db.commit()
        await self.db.refresh(prompt)

        logger.info("Created prompt: %s (%s)", prompt.id, prompt.prompt_name)
        return prompt

    async def revise(
        self,
        parent_id: uuid.UUID,
        prompt_text: str,
        prompt_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ExtractionPrompt:
        """
        Create the next version of a prompt. The parent is left untouched.

        Raises:
            PromptNotFound: Parent doesn't exist or was deleted
            RevisionConflict: Parent is not the latest version of its chain
        """
        self._check_text(prompt_text)
        parent = await self.get(parent_id)
        if parent.is_deleted:
            raise PromptNotFound(f"Prompt '{parent_id}' not found")

        async with self.locks.acquire(chain_key(parent.chain_root_id)):
            head_version = await self._head_version(parent.chain_root_id)
            if parent.version != head_version:
                raise RevisionConflict(
                    f"Prompt '{parent_id}' is version {parent.version} but the chain "
                    f"is at version {head_version}; revise the latest version",
                    {"chain_root_id": str(parent.chain_root_id), "head_version": head_version},
                )

            prompt = ExtractionPrompt(
                id=uuid.uuid4(),
                vendor_id=parent.vendor_id,
                prompt_name=prompt_name or parent.prompt_name,
                prompt_text=prompt_text,
                invoice_type=parent.invoice_type,
                version=parent.version + 1,
                parent_prompt_id=parent.id,
                chain_root_id=parent.chain_root_id,
                is_template=parent.is_template,
                is_active=False,
                created_by=created_by or "system",
            )
            self.db.add(prompt)
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                raise RevisionConflict(
                    f"Version {parent.version + 1} already exists for this prompt chain"
                ) from e

        await self.db.refresh(prompt)
        logger.info(
            "Revised prompt %s -> %s (version %d)", parent.id, prompt.id, prompt.version
        )
        return prompt

    async def get(self, prompt_id: uuid.UUID) -> ExtractionPrompt:
        """
        Get prompt by ID, including soft-deleted prompts.

        Raises:
            PromptNotFound: If prompt doesn't exist
        """
        prompt = await self.db.get(ExtractionPrompt, prompt_id)
        if not prompt:
            raise PromptNotFound(f"Prompt '{prompt_id}' not found")
        return prompt

    async def list_by_filter(
        self,
        vendor_id: Optional[uuid.UUID] = None,
        is_active: Optional[bool] = None,
        is_template: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ExtractionPrompt], int]:
        """List non-deleted prompts, newest first. Returns (page, total)."""
        conditions = [ExtractionPrompt.deleted_at.is_(None)]
        if vendor_id is not None:
            conditions.append(ExtractionPrompt.vendor_id == vendor_id)
        if is_active is not None:
            conditions.append(ExtractionPrompt.is_active == is_active)
        if is_template is not None:
            conditions.append(ExtractionPrompt.is_template == is_template)

        count_stmt = select(func.count()).select_from(ExtractionPrompt).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            select(ExtractionPrompt)
            .where(*conditions)
            .order_by(ExtractionPrompt.created_at.desc(), ExtractionPrompt.version.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def history_of(self, prompt_id: uuid.UUID) -> List[ExtractionPrompt]:
        """
        Every version of the chain containing prompt_id, oldest first.

        Deleted versions are included with deleted_at set, so each
        parent_prompt_id in the list resolves within it.
        """
        member = await self.get(prompt_id)
        stmt = (
            select(ExtractionPrompt)
            .where(ExtractionPrompt.chain_root_id == member.chain_root_id)
            .order_by(ExtractionPrompt.version.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, prompt_id: uuid.UUID) -> ExtractionPrompt:
        """
        Soft-delete a prompt.

        Runs under the vendor lock so it cannot interleave with an activation
        of the same prompt.

        Raises:
            PromptNotFound: If prompt doesn't exist or is already deleted
            PromptInUse: If prompt is the vendor's active prompt
        """
        prompt = await self.get(prompt_id)
        if prompt.is_deleted:
            raise PromptNotFound(f"Prompt '{prompt_id}' not found")

        key = vendor_key(prompt.vendor_id) if prompt.vendor_id else chain_key(prompt.chain_root_id)
        async with self.locks.acquire(key):
            await self.db.refresh(prompt)
            if prompt.is_active:
                raise PromptInUse(
                    f"Prompt '{prompt_id}' is active; activate another prompt before deleting it"
                )
            prompt.deleted_at = utc_now()
            await self.db.commit()

        logger.info("Deleted prompt: %s", prompt_id)
        return prompt

    async def record_test_run(
        self,
        prompt_id: uuid.UUID,
        result: ExtractionResult,
        document_type: Optional[str] = None,
    ) -> PromptTestRun:
        """Store the outcome of a test extraction against a prompt."""
        run = PromptTestRun(
            prompt_id=prompt_id,
            success=result.success,
            error_kind=result.error.kind if result.error else None,
            confidence_score=result.confidence_score,
            processing_time_ms=result.processing_time_ms,
            custom_prompt_used=result.custom_prompt_used,
            document_type=document_type,
        )
        self.db.add(run)
        await self.db.commit()
        await self.db.refresh(run)
        return run

    async def list_test_runs(self, prompt_id: uuid.UUID, limit: int = 20) -> List[PromptTestRun]:
        await self.get(prompt_id)
        stmt = (
            select(PromptTestRun)
            .where(PromptTestRun.prompt_id == prompt_id)
            .order_by(PromptTestRun.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _head_version(self, chain_root_id: uuid.UUID) -> int:
        stmt = select(func.max(ExtractionPrompt.version)).where(
            ExtractionPrompt.chain_root_id == chain_root_id
        )
        return (await self.db.execute(stmt)).scalar_one()

    @staticmethod
    def _check_text(prompt_text: str):
        if not prompt_text or not prompt_text.strip():
            raise InvalidPromptDefinition("prompt_text must not be empty")
