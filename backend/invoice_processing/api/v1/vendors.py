"""Vendor registry API routes."""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.db.database import get_db
from invoice_processing.models.vendor import Vendor
from invoice_processing.modules.extraction.exceptions import VendorExists, VendorNotFound
from invoice_processing.modules.extraction.prompts.activation import ActivationManager
from invoice_processing.modules.extraction.schemas import (
    PromptResponse,
    VendorCreate,
    VendorResponse,
)

from .deps import get_activation_manager

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=VendorResponse, status_code=status.HTTP_201_CREATED)
async def create_vendor(data: VendorCreate, db: AsyncSession = Depends(get_db)):
    """Register a vendor. Names are unique."""
    name = data.name.strip()
    existing = await db.execute(select(Vendor).where(Vendor.name == name))
    if existing.scalar_one_or_none():
        raise VendorExists(f"Vendor '{name}' already exists")

    vendor = Vendor(name=name, display_name=(data.display_name or name).strip())
    db.add(vendor)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise VendorExists(f"Vendor '{name}' already exists") from e
    await db.refresh(vendor)

    logger.info("Registered vendor: %s (%s)", vendor.id, vendor.name)
    return vendor


@router.get("", response_model=List[VendorResponse])
async def list_vendors(
    include_inactive: bool = Query(False, description="Include deactivated vendors"),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Vendor).order_by(Vendor.name)
    if not include_inactive:
        stmt = stmt.where(Vendor.active == True)  # noqa: E712
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/{vendor_id}/active-prompt", response_model=Optional[PromptResponse])
async def get_vendor_active_prompt(
    vendor_id: UUID,
    db: AsyncSession = Depends(get_db),
    activation: ActivationManager = Depends(get_activation_manager),
):
    """The vendor's active prompt, or null when none is active."""
    if not await db.get(Vendor, vendor_id):
        raise VendorNotFound(f"Vendor '{vendor_id}' not found")
    return await activation.get_active(vendor_id)
