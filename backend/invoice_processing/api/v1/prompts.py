"""Prompt management and prompt testing API routes."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from fastapi.responses import JSONResponse

from invoice_processing.modules.extraction.exceptions import PromptNotFound
from invoice_processing.modules.extraction.prompts.activation import ActivationManager
from invoice_processing.modules.extraction.prompts.store import PromptStore
from invoice_processing.modules.extraction.schemas import (
    PromptCreate,
    PromptHistoryResponse,
    PromptListResponse,
    PromptResponse,
    PromptRevise,
    PromptTestRunListResponse,
    PromptTestRunRequest,
    PromptTestRunSummary,
    PromptTestUploadResponse,
)
from invoice_processing.modules.extraction.services.document_cache import TemporaryDocumentCache
from invoice_processing.modules.extraction.services.document_processor import DocumentProcessor
from invoice_processing.modules.extraction.services.orchestrator import ExtractionOrchestrator

from .deps import (
    get_activation_manager,
    get_document_cache,
    get_document_processor,
    get_prompt_store,
    get_test_orchestrator,
)

router = APIRouter()


# --- Prompt Management ---


@router.post("", response_model=PromptResponse, status_code=status.HTTP_201_CREATED)
async def create_prompt(
    data: PromptCreate,
    store: PromptStore = Depends(get_prompt_store),
):
    """Create a new prompt chain at version 1. Prompts start inactive."""
    return await store.create(
        prompt_name=data.prompt_name,
        prompt_text=data.prompt_text,
        vendor_id=data.vendor_id,
        is_template=data.is_template,
        invoice_type=data.invoice_type,
        created_by=data.created_by,
    )


@router.get("", response_model=PromptListResponse)
async def list_prompts(
    vendor_id: Optional[UUID] = Query(None, description="Filter by vendor"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    is_template: Optional[bool] = Query(None, description="Filter templates"),
    limit: int = Query(50, ge=1, le=200, description="Maximum results to return"),
    offset: int = Query(0, ge=0, description="Results to skip"),
    store: PromptStore = Depends(get_prompt_store),
):
    """List prompts, newest first. Deleted prompts are excluded."""
    prompts, total = await store.list_by_filter(
        vendor_id=vendor_id,
        is_active=is_active,
        is_template=is_template,
        limit=limit,
        offset=offset,
    )
    return PromptListResponse(
        prompts=[PromptResponse.model_validate(p) for p in prompts],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{prompt_id}", response_model=PromptResponse)
async def get_prompt(prompt_id: UUID, store: PromptStore = Depends(get_prompt_store)):
    """Get a prompt by ID. Deleted prompts still resolve for audit purposes."""
    return await store.get(prompt_id)


@router.put("/{prompt_id}", response_model=PromptResponse, status_code=status.HTTP_201_CREATED)
async def revise_prompt(
    prompt_id: UUID,
    data: PromptRevise,
    store: PromptStore = Depends(get_prompt_store),
):
    """
    Save an edit as a new version.

    The stored prompt is never modified; the response is the new version.
    Only the latest version of a chain can be revised.
    """
    return await store.revise(
        prompt_id,
        prompt_text=data.prompt_text,
        prompt_name=data.prompt_name,
        created_by=data.created_by,
    )


@router.post("/{prompt_id}/activate", response_model=PromptResponse)
async def activate_prompt(
    prompt_id: UUID,
    activation: ActivationManager = Depends(get_activation_manager),
):
    """Make this prompt its vendor's only active prompt."""
    return await activation.activate(prompt_id)


@router.delete("/{prompt_id}", response_model=PromptResponse)
async def delete_prompt(prompt_id: UUID, store: PromptStore = Depends(get_prompt_store)):
    """Soft-delete a prompt. The active prompt cannot be deleted."""
    return await store.delete(prompt_id)


@router.get("/{prompt_id}/history", response_model=PromptHistoryResponse)
async def prompt_history(prompt_id: UUID, store: PromptStore = Depends(get_prompt_store)):
    versions = await store.history_of(prompt_id)
    prompt = await store.get(prompt_id)
    return PromptHistoryResponse(
        chain_root_id=prompt.chain_root_id,
        versions=[PromptResponse.model_validate(v) for v in versions],
    )


@router.get("/{prompt_id}/test-runs", response_model=PromptTestRunListResponse)
async def list_prompt_test_runs(
    prompt_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    store: PromptStore = Depends(get_prompt_store),
):
    runs = await store.list_test_runs(prompt_id, limit=limit)
    return PromptTestRunListResponse(
        runs=[PromptTestRunSummary.model_validate(r) for r in runs]
    )


# --- Prompt Testing ---


@router.post("/{prompt_id}/test-upload", response_model=PromptTestUploadResponse)
async def upload_test_document(
    prompt_id: UUID,
    file: UploadFile = File(..., description="Invoice to test against (PDF or HTML)"),
    store: PromptStore = Depends(get_prompt_store),
    cache: TemporaryDocumentCache = Depends(get_document_cache),
    processor: DocumentProcessor = Depends(get_document_processor),
):
    """
    Upload a test invoice for a prompt.

    Text is extracted once and cached under the returned temp_file_id, so
    several prompt variants can be tried against it without re-uploading.
    The handle is bound to this prompt and expires after a few minutes.
    """
    prompt = await store.get(prompt_id)
    if prompt.is_deleted:
        raise PromptNotFound(f"Prompt '{prompt_id}' not found")

    raw_bytes = await file.read()
    processor.validate_upload(file.filename, file.content_type, len(raw_bytes))

    session = await cache.put(raw_bytes, file.filename, owner_prompt_id=prompt.id)
    return PromptTestUploadResponse(
        temp_file_id=session.temp_file_id,
        extracted_content=session.extracted_content,
        document_type=session.document_type,
        filename=session.filename,
        expires_at=session.expires_at,
    )


@router.post("/{prompt_id}/test-run")
async def run_prompt_test(
    prompt_id: UUID,
    data: PromptTestRunRequest,
    store: PromptStore = Depends(get_prompt_store),
    orchestrator: ExtractionOrchestrator = Depends(get_test_orchestrator),
):
    """
    Run a prompt against a cached test document.

    promptText overrides the stored prompt text without saving it. The
    response is the extraction envelope with a status matching its error kind.
    """
    prompt = await store.get(prompt_id)
    if prompt.is_deleted:
        raise PromptNotFound(f"Prompt '{prompt_id}' not found")

    prompt_text = data.prompt_text if data.prompt_text is not None else prompt.prompt_text
    result = await orchestrator.run_test(
        prompt_text,
        data.temp_file_id,
        prompt_id=prompt.id,
        custom_prompt_used=prompt_text != prompt.prompt_text,
    )
    await store.record_test_run(prompt.id, result, document_type=data.document_type)

    return JSONResponse(status_code=result.status_code, content=result.model_dump(mode="json"))


@router.delete("/test-cleanup/{temp_file_id}")
async def cleanup_test_document(
    temp_file_id: str,
    cache: TemporaryDocumentCache = Depends(get_document_cache),
):
    """Discard a cached test document before it expires."""
    return {"temp_file_id": temp_file_id, "deleted": await cache.discard(temp_file_id)}
