"""FastAPI application for the batch scan pipeline.

Provides REST endpoints for template listing, batch intake and
processing, per-item review and saving, and listing and confirming external scans.
"""

from functools import lru_cache
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from src.batch.intake import Batch
from src.batch.state import DocumentItem
from src.errors import (
    BatchAlreadyStartedError,
    InvalidTransitionError,
    PersistenceError,
    ReviewError,
    UnknownTemplateError,
)
from src.pipeline import PipelineServices, build_services
from src.review.store import DEFAULT_RECENT_LIMIT
from src.templates.registry import AUTO_DETECT, Template
from src.utils.config import load_config
from src.utils.logger import get_logger

from .schemas import (
    BatchItemResponse,
    BatchResponse,
    BatchStatsResponse,
    ConfirmResponse,
    FieldEditRequest,
    HealthResponse,
    ReviewFieldResponse,
    ReviewResponse,
    SaveRequest,
    SaveResponse,
    ScanListResponse,
    ScanRecordResponse,
    TemplateCategoryInfo,
    TemplateFieldInfo,
    TemplateInfo,
    TemplatesResponse,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Document Scan Pipeline API",
    description="Batch extraction of business documents with operator review",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_services() -> PipelineServices:
    """Build the shared pipeline components once per process."""
    return build_services(load_config())


Services = Annotated[PipelineServices, Depends(get_services)]


def _get_batch(services: PipelineServices, batch_id: str) -> Batch:
    batch = services.batches.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch not found: {batch_id}")
    return batch


def _get_item(batch: Batch, item_id: str) -> DocumentItem:
    try:
        return batch.tracker.get(item_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Item not found: {item_id}") from exc


def _template_info(template: Template) -> TemplateInfo:
    return TemplateInfo(
        id=template.id,
        key=template.key,
        name=template.name,
        category=template.category,
        fields=[
            TemplateFieldInfo(
                key=f.key,
                label=f.label,
                type=f.type,
                options=list(f.options) if f.options else None,
                validation=f.validation_rule,
            )
            for f in template.fields
        ],
    )


def _item_response(item: DocumentItem) -> BatchItemResponse:
    return BatchItemResponse(
        id=item.id,
        filename=item.payload.filename,
        size=item.payload.size,
        status=item.status.value,
        extracted_data=item.extracted_data,
        confidence_score=item.confidence_score,
        scan_id=item.scan_id,
        validation_errors=item.validation_errors,
        detected_type=item.detected_type,
        error=item.error,
    )


def _batch_response(batch: Batch, rejected: list[str] | None = None) -> BatchResponse:
    active = batch.resolver.active_template
    return BatchResponse(
        id=batch.id,
        template_key=batch.template_key,
        active_template=active.key if active is not None else None,
        organization_id=batch.organization_id,
        started=batch.started,
        finished=batch.finished,
        stats=BatchStatsResponse(**batch.tracker.stats.to_dict()),
        items=[_item_response(i) for i in batch.items],
        rejected=rejected or [],
    )


@app.get("/health", response_model=HealthResponse)
async def health_check(services: Services) -> HealthResponse:
    """Return system health status."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        templates_loaded=len(services.registry),
    )


@app.get("/templates", response_model=TemplatesResponse)
async def list_templates(services: Services) -> TemplatesResponse:
    """List extraction templates grouped by category."""
    return TemplatesResponse(
        auto_detect_key=AUTO_DETECT,
        categories=[
            TemplateCategoryInfo(
                category=category,
                templates=[_template_info(t) for t in templates],
            )
            for category, templates in services.registry.by_category().items()
        ],
    )


@app.post("/batches", response_model=BatchResponse, status_code=201)
async def create_batch(
    services: Services,
    files: Annotated[list[UploadFile], File(...)],
    template_key: Annotated[str, Form()],
    org_id: Annotated[str, Form()],
) -> BatchResponse:
    """Create a batch from uploaded images.

    Files that are not images or exceed the size limit are reported in
    ``rejected`` and left out of the batch.
    """
    try:
        batch = services.new_batch(template_key, org_id)
    except UnknownTemplateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    uploads = [(f.filename or "document", await f.read()) for f in files]
    _, rejected = batch.add_files(uploads)
    logger.info("Created batch %s with %d items", batch.id, len(batch.items))
    return _batch_response(batch, rejected)


@app.get("/batches/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str, services: Services) -> BatchResponse:
    """Return batch statistics and every item's current state."""
    return _batch_response(_get_batch(services, batch_id))


@app.delete("/batches/{batch_id}/items/{item_id}", response_model=BatchResponse)
async def remove_item(batch_id: str, item_id: str, services: Services) -> BatchResponse:
    """Remove an item before the batch is dispatched."""
    batch = _get_batch(services, batch_id)
    _get_item(batch, item_id)
    try:
        batch.remove_item(item_id)
    except (BatchAlreadyStartedError, InvalidTransitionError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _batch_response(batch)


@app.post("/batches/{batch_id}/process", response_model=BatchResponse, status_code=202)
def process_batch(
    batch_id: str,
    services: Services,
    background_tasks: BackgroundTasks,
) -> BatchResponse:
    """Start sequential extraction of the batch in the background."""
    batch = _get_batch(services, batch_id)
    if not batch.items:
        raise HTTPException(status_code=400, detail="Batch has no items")
    try:
        batch.mark_started()
    except BatchAlreadyStartedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    background_tasks.add_task(services.coordinator.dispatch, batch)
    return _batch_response(batch)


@app.post("/batches/{batch_id}/cancel", response_model=BatchResponse)
async def cancel_batch(batch_id: str, services: Services) -> BatchResponse:
    """Stop a running batch before its next item."""
    batch = _get_batch(services, batch_id)
    batch.cancel()
    return _batch_response(batch)


@app.patch("/batches/{batch_id}/items/{item_id}", response_model=BatchItemResponse)
async def edit_item_field(
    batch_id: str,
    item_id: str,
    edit: FieldEditRequest,
    services: Services,
) -> BatchItemResponse:
    """Change one extracted field and re-validate it."""
    batch = _get_batch(services, batch_id)
    item = _get_item(batch, item_id)
    template = batch.resolver.template_for_item(item)
    try:
        item = services.review.edit_field(batch.tracker, item_id, edit.key, edit.value, template)
    except ReviewError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _item_response(item)


@app.get("/batches/{batch_id}/items/{item_id}/review", response_model=ReviewResponse)
async def review_item(batch_id: str, item_id: str, services: Services) -> ReviewResponse:
    """Return the review form of one item."""
    batch = _get_batch(services, batch_id)
    item = _get_item(batch, item_id)
    view = services.review.review_view(item, batch.resolver.template_for_item(item))
    return ReviewResponse(
        item_id=view.item_id,
        filename=view.filename,
        status=view.status.value,
        structured=view.structured,
        template_key=view.template_key,
        fields=[
            ReviewFieldResponse(
                key=f.key,
                label=f.label,
                value=f.value,
                type=f.type,
                options=list(f.options) if f.options else None,
                error=f.error,
            )
            for f in view.fields
        ],
        confidence_score=view.confidence_score,
        detected_type=view.detected_type,
        error=view.error,
        can_save=view.can_save,
    )


@app.post("/batches/{batch_id}/items/{item_id}/save", response_model=SaveResponse)
def save_item(
    batch_id: str,
    item_id: str,
    request: SaveRequest,
    services: Services,
) -> SaveResponse:
    """Persist an item's reviewed data.

    Items without a scan id are not saved and nothing is sent to the
    store; the response reports ``saved: false``.
    """
    batch = _get_batch(services, batch_id)
    item = _get_item(batch, item_id)
    try:
        record = services.review.save(item, request.reviewer_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    if record is None:
        return SaveResponse(saved=False)
    return SaveResponse(
        saved=True,
        scan_id=record.id,
        reviewed_at=record.reviewed_at.isoformat() if record.reviewed_at else None,
        validation_errors=item.validation_errors,
    )


@app.post("/scans/{scan_id}/confirm", response_model=ConfirmResponse)
def confirm_scan(scan_id: str, services: Services) -> ConfirmResponse:
    """Confirm a document that was submitted outside the batch flow."""
    try:
        changed = services.review.confirm_external(scan_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ConfirmResponse(scan_id=scan_id, confirmed=True, already_confirmed=not changed)


@app.get("/scans", response_model=ScanListResponse)
def list_scans(
    services: Services,
    org_id: Annotated[str, Query()],
    limit: Annotated[int, Query(ge=1, le=100)] = DEFAULT_RECENT_LIMIT,
) -> ScanListResponse:
    """List the organization's most recent scans, newest first."""
    try:
        records = services.review.received_documents(org_id, limit)
    except PersistenceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ScanListResponse(
        org_id=org_id,
        scans=[
            ScanRecordResponse(
                id=r.id,
                status=r.status,
                template_key=r.template_key,
                storage_path=r.storage_path,
                original_filename=r.original_filename,
                created_by=r.created_by,
                created_at=r.created_at.isoformat() if r.created_at else None,
                extracted_data=r.extracted_data,
            )
            for r in records
        ],
    )
