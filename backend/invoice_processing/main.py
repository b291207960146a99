"""Main FastAPI application entry point"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from invoice_processing.api.v1 import api_router
from invoice_processing.core.config import settings
from invoice_processing.core.locks import KeyedLocks
from invoice_processing.core.logging import setup_logging
from invoice_processing.db.database import init_db
from invoice_processing.modules.extraction.exceptions import InvoiceProcessingError
from invoice_processing.modules.extraction.services.ai_client import AnthropicExtractionClient
from invoice_processing.modules.extraction.services.document_cache import TemporaryDocumentCache
from invoice_processing.modules.extraction.services.document_processor import DocumentProcessor

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, text_extractor=None, ai_extractor=None, document_cache=None):
    """Attach the long-lived collaborators shared by all requests."""
    app.state.locks = KeyedLocks()
    app.state.document_processor = DocumentProcessor()
    app.state.text_extractor = text_extractor or app.state.document_processor
    app.state.ai_extractor = ai_extractor or AnthropicExtractionClient()
    app.state.document_cache = document_cache or TemporaryDocumentCache.from_url(
        app.state.text_extractor
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler
    """
    logger.info("Starting %s...", settings.APP_NAME)

    await init_db()
    init_app_state(app)

    logger.info("%s started successfully", settings.APP_NAME)

    try:
        yield
    finally:
        logger.info("Shutting down...")
        ai_extractor = getattr(app.state, "ai_extractor", None)
        if ai_extractor is not None and hasattr(ai_extractor, "close"):
            await ai_extractor.close()
        document_cache = getattr(app.state, "document_cache", None)
        if document_cache is not None:
            await document_cache.close()
        logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Invoice extraction with versioned, testable prompts",
    version="1.0.0",
    openapi_url="/api/v1/openapi.json",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(InvoiceProcessingError)
async def invoice_processing_exception_handler(request, exc: InvoiceProcessingError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.kind,
            "message": exc.message,
            "details": exc.details,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """Handle validation errors without echoing user input."""
    errors = [
        {
            "type": error.get("type", ""),
            "location": error.get("loc", []),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "details": errors,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An unexpected error occurred",
        },
    )


app.include_router(api_router, prefix="/api/v1")


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": "1.0.0",
    }
