"""
API v1 package
"""

from fastapi import APIRouter
from .prompts import router as prompts_router
from .vendors import router as vendors_router
from .invoices import router as invoices_router
from .diagnostics import router as diagnostics_router

# Create main API router
api_router = APIRouter()

# Include prompt management and testing routes
api_router.include_router(prompts_router, prefix="/prompts", tags=["prompts"])

# Include vendor registry routes
api_router.include_router(vendors_router, prefix="/vendors", tags=["vendors"])

# Include invoice ingestion routes
api_router.include_router(invoices_router, prefix="/invoices", tags=["invoices"])

# Include diagnostics routes
api_router.include_router(diagnostics_router, prefix="/diagnostics", tags=["diagnostics"])
