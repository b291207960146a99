"""
Prompt activation.

A vendor has at most one active prompt. Activation is the only path that
sets is_active to true; it deactivates every other prompt of the vendor and
activates the target in one transaction, under the vendor's lock.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.core.locks import KeyedLocks, vendor_key
from invoice_processing.models.extraction_prompt import ExtractionPrompt
from invoice_processing.models.vendor import Vendor

from ..exceptions import InvalidActivationTarget

logger = logging.getLogger(__name__)


class ActivationManager:
    """Enforces the single-active-prompt-per-vendor rule."""

    def __init__(self, db: AsyncSession, locks: KeyedLocks):
        self.db = db
        self.locks = locks

    async def activate(self, prompt_id: uuid.UUID) -> ExtractionPrompt:
        """
        Make prompt_id the only active prompt of its vendor.

        Any other active prompt of the vendor is deactivated, including extra
        ones left behind by earlier inconsistencies.

        Raises:
            InvalidActivationTarget: Prompt missing, deleted, a template or vendorless
        """
        prompt = await self.db.get(ExtractionPrompt, prompt_id)
        self._check_target(prompt, prompt_id)
        vendor_id = prompt.vendor_id

        async with self.locks.acquire(vendor_key(vendor_id)):
            # Re-read under the lock; a concurrent delete may have won
            await self.db.refresh(prompt)
            self._check_target(prompt, prompt_id)

            try:
                # Row lock on PostgreSQL; SQLite relies on the vendor lock
                vendor_stmt = select(Vendor).where(Vendor.id == vendor_id).with_for_update()
                vendor = (await self.db.execute(vendor_stmt)).scalar_one()

                await self.db.execute(
                    update(ExtractionPrompt)
                    .where(
                        ExtractionPrompt.vendor_id == vendor_id,
                        ExtractionPrompt.is_active == True,  # noqa: E712
                        ExtractionPrompt.id != prompt.id,
                    )
                    .values(is_active=False)
                    .execution_options(synchronize_session="fetch")
                )
                await self.db.execute(
                    update(ExtractionPrompt)
                    .where(ExtractionPrompt.id == prompt.id)
                    .values(is_active=True)
                    .execution_options(synchronize_session="fetch")
                )
                vendor.active_prompt_id = prompt.id
                await self.db.commit()
            except SQLAlchemyError:
                await self.db.rollback()
                raise

        await self.db.refresh(prompt)
        logger.info("Activated prompt %s for vendor %s", prompt.id, vendor_id)
        return prompt

    async def get_active(self, vendor_id: uuid.UUID) -> Optional[ExtractionPrompt]:
        """Current active prompt of a vendor, or None."""
        stmt = select(ExtractionPrompt).where(
            ExtractionPrompt.vendor_id == vendor_id,
            ExtractionPrompt.is_active == True,  # noqa: E712
            ExtractionPrompt.deleted_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    def _check_target(prompt: Optional[ExtractionPrompt], prompt_id):
        if prompt is None or prompt.is_deleted:
            raise InvalidActivationTarget(f"Prompt '{prompt_id}' not found")
        if prompt.is_template:
            raise InvalidActivationTarget(
                f"Prompt '{prompt_id}' is a template and cannot be activated"
            )
        if prompt.vendor_id is None:
            raise InvalidActivationTarget(
                f"Prompt '{prompt_id}' has no vendor and cannot be activated"
            )
