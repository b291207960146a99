"""
Request-scoped collaborators.

Long-lived services (locks, cache, text and AI clients) live on app.state and
are created in the application lifespan; everything that needs the request's
database session is assembled here per request.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_processing.core.locks import KeyedLocks
from invoice_processing.db.database import get_db
from invoice_processing.modules.extraction.prompts.activation import ActivationManager
from invoice_processing.modules.extraction.prompts.store import PromptStore
from invoice_processing.modules.extraction.services.document_cache import TemporaryDocumentCache
from invoice_processing.modules.extraction.services.document_processor import DocumentProcessor
from invoice_processing.modules.extraction.services.guard import DuplicateConfidenceGuard
from invoice_processing.modules.extraction.services.orchestrator import ExtractionOrchestrator


def get_locks(request: Request) -> KeyedLocks:
    return request.app.state.locks


def get_document_cache(request: Request) -> TemporaryDocumentCache:
    return request.app.state.document_cache


def get_document_processor(request: Request) -> DocumentProcessor:
    """Upload validation; text extraction goes through app.state.text_extractor."""
    return request.app.state.document_processor


def get_ai_extractor(request: Request):
    return request.app.state.ai_extractor


def get_prompt_store(
    db: AsyncSession = Depends(get_db), locks: KeyedLocks = Depends(get_locks)
) -> PromptStore:
    return PromptStore(db, locks)


def get_activation_manager(
    db: AsyncSession = Depends(get_db), locks: KeyedLocks = Depends(get_locks)
) -> ActivationManager:
    return ActivationManager(db, locks)


def get_test_orchestrator(request: Request) -> ExtractionOrchestrator:
    """Orchestrator for test runs; never touches the database."""
    state = request.app.state
    return ExtractionOrchestrator(
        text_extractor=state.text_extractor,
        ai_extractor=state.ai_extractor,
        cache=state.document_cache,
        locks=state.locks,
    )


def get_production_orchestrator(
    request: Request,
    db: AsyncSession = Depends(get_db),
    activation: ActivationManager = Depends(get_activation_manager),
) -> ExtractionOrchestrator:
    state = request.app.state
    return ExtractionOrchestrator(
        text_extractor=state.text_extractor,
        ai_extractor=state.ai_extractor,
        db=db,
        activation=activation,
        guard=DuplicateConfidenceGuard(db),
        locks=state.locks,
    )
