"""Pydantic request/response schemas for the FastAPI endpoints."""

from pydantic import BaseModel, Field


class TemplateFieldInfo(BaseModel):
    """One field of a template schema."""

    key: str
    label: str
    type: str
    options: list[str] | None = None
    validation: str | None = None


class TemplateInfo(BaseModel):
    """A document template available for extraction."""

    id: str | None = None
    key: str
    name: str
    category: str
    fields: list[TemplateFieldInfo]


class TemplateCategoryInfo(BaseModel):
    """Templates sharing one category."""

    category: str
    templates: list[TemplateInfo]


class TemplatesResponse(BaseModel):
    """Response schema listing templates grouped by category."""

    auto_detect_key: str
    categories: list[TemplateCategoryInfo]


class BatchStatsResponse(BaseModel):
    total: int
    completed: int
    failed: int
    processing: int
    pending: int


class BatchItemResponse(BaseModel):
    """State of a single item in a batch."""

    id: str
    filename: str
    size: int
    status: str
    extracted_data: dict[str, str] | None = None
    confidence_score: float | None = None
    scan_id: str | None = None
    validation_errors: dict[str, str] = Field(default_factory=dict)
    detected_type: str | None = None
    error: str | None = None


class BatchResponse(BaseModel):
    """Batch summary with per-item state."""

    id: str
    template_key: str
    active_template: str | None
    organization_id: str
    started: bool
    finished: bool
    stats: BatchStatsResponse
    items: list[BatchItemResponse]
    rejected: list[str] = Field(default_factory=list)


class FieldEditRequest(BaseModel):
    key: str
    value: str


class ReviewFieldResponse(BaseModel):
    key: str
    label: str
    value: str
    type: str
    options: list[str] | None = None
    error: str | None = None


class ReviewResponse(BaseModel):
    """Review form for one item."""

    item_id: str
    filename: str
    status: str
    structured: bool
    template_key: str | None
    fields: list[ReviewFieldResponse]
    confidence_score: float | None = None
    detected_type: str | None = None
    error: str | None = None
    can_save: bool


class SaveRequest(BaseModel):
    reviewer_id: str


class SaveResponse(BaseModel):
    saved: bool
    scan_id: str | None = None
    reviewed_at: str | None = None
    validation_errors: dict[str, str] = Field(default_factory=dict)


class ConfirmResponse(BaseModel):
    scan_id: str
    confirmed: bool
    already_confirmed: bool


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    templates_loaded: int


class ScanRecordResponse(BaseModel):
    """A persisted scan as listed for confirmation."""

    id: str
    status: str
    template_key: str | None = None
    storage_path: str | None = None
    original_filename: str | None = None
    created_by: str | None = None
    created_at: str | None = None
    extracted_data: dict[str, str] = Field(default_factory=dict)


class ScanListResponse(BaseModel):
    org_id: str
    scans: list[ScanRecordResponse]
