"""
Request and response models for the import-session endpoints.
"""
from typing import Any, Dict, List, Optional, Literal

from pydantic import BaseModel, Field, field_validator

from app.api.schemas.rules import RuleSet


class SuggestedAlternative(BaseModel):
    field: str
    confidence: float = Field(ge=0.0, le=1.0)


class MappingSuggestionModel(BaseModel):
    """A proposed column -> field assignment produced by the upstream analysis."""
    column: str
    field: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    alternatives: List[SuggestedAlternative] = Field(default_factory=list)


class CreateSessionRequest(BaseModel):
    headers: List[str]
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    # column -> canonical field; omitted means "start from the suggestions"
    mapping: Optional[Dict[str, Optional[str]]] = None
    suggestions: Optional[List[MappingSuggestionModel]] = None
    rules: Optional[RuleSet] = None
    use_default_rules: bool = False
    template_name: Optional[str] = None

    @field_validator("headers")
    @classmethod
    def _strip_headers(cls, value: List[str]) -> List[str]:
        headers = [header.strip() for header in value]
        if len(set(headers)) != len(headers):
            raise ValueError("Header names must be unique")
        return headers


class UpdateMappingRequest(BaseModel):
    mapping: Dict[str, Optional[str]]
    immediate: bool = True


class SaveTemplateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None


class AlertModel(BaseModel):
    type: Literal["error", "warning", "info", "success"]
    title: str
    message: str
    field: Optional[str] = None
    suggestion: Optional[str] = None


class QualityReportModel(BaseModel):
    is_valid: bool
    score: int = Field(ge=0, le=100)
    alerts: List[AlertModel]
    suggestions: List[str]
    preview: List[Dict[str, Optional[str]]]
    record_summary: Dict[str, int]


class SessionResponse(BaseModel):
    id: str
    status: str
    version: int
    headers: List[str]
    total_rows: int
    mapping: Dict[str, str]
    suggestions: List[MappingSuggestionModel]
    report: Optional[QualityReportModel] = None
    last_error: Optional[str] = None


class ImportDetailModel(BaseModel):
    tracking_code: str
    status: Literal["success", "warning", "error"]
    message: str
    row_number: Optional[int] = None


class CommitMetricsModel(BaseModel):
    total: int
    processed: int
    succeeded: int
    failed: int
    chunk_timings_ms: List[float]
    average_chunk_ms: float
    error_codes: Dict[str, int]


class ImportResultResponse(BaseModel):
    success: int
    warnings: int
    errors: int
    details: List[ImportDetailModel]
    metrics: CommitMetricsModel


class MappingTemplateModel(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    assignments: Dict[str, str]


class MappingTemplateListResponse(BaseModel):
    templates: List[MappingTemplateModel]


class HealthResponse(BaseModel):
    status: str
    sessions: int
    timestamp: str
