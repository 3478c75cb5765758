"""Pydantic request/response schemas for the DeepImg API."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints, field_validator

from deepimg.core.classifier import DEFAULT_LABELS, MAX_LABEL_LENGTH, MAX_LABELS, MODEL_REGISTRY, clean_labels

CandidateLabel = Annotated[str, StringConstraints(max_length=MAX_LABEL_LENGTH)]


class LabelScoreModel(BaseModel):
    """A single ranked label with its confidence."""

    label: str
    score: float = Field(ge=0.0, le=1.0)


class FileInfo(BaseModel):
    """An accepted file as shown in the file list."""

    id: str
    name: str
    size: int
    mime_type: str
    image_url: str = Field(description="Display handle URL, valid until the file is removed")
    status: str = Field(description="'pending', 'classified' or 'failed'")
    result: list[LabelScoreModel] | None = None
    error: str | None = None
    top_label: str | None = Field(default=None, description="First synonym of the top-ranked label")
    top_score_percent: int | None = None


class FilesResponse(BaseModel):
    files: list[FileInfo]
    oversize_notice: bool
    run_in_flight: bool


class AddFilesResponse(BaseModel):
    """Outcome of an upload batch."""

    accepted: list[FileInfo]
    oversized: list[str]
    duplicates: int
    unsupported: int
    oversize_notice: bool


class ClassificationSettings(BaseModel):
    """User-adjustable model and candidate labels. Held in memory only."""

    model: str = "openai/clip-vit-base-patch32"
    labels: list[CandidateLabel] = Field(default_factory=lambda: list(DEFAULT_LABELS), max_length=MAX_LABELS)

    @field_validator("model")
    @classmethod
    def _known_model(cls, value: str) -> str:
        if value not in MODEL_REGISTRY:
            raise ValueError(f"Unknown model: {value}")
        return value

    @field_validator("labels")
    @classmethod
    def _drop_blank_labels(cls, value: list[str]) -> list[str]:
        return clean_labels(value)


class ClassifyRequest(BaseModel):
    """Options for a classification run."""

    retry_failed: bool = Field(default=False, description="Re-run files that failed previously")


class ChartBucketModel(BaseModel):
    label: str
    count: int = Field(ge=1)
    color: str


class LegendEntryModel(BaseModel):
    label: str = Field(description="Display name")
    color: str


class ChartResponse(BaseModel):
    """Pie chart data: ordered buckets plus legend config keyed by label."""

    buckets: list[ChartBucketModel]
    config: dict[str, LegendEntryModel]


class RunResponse(BaseModel):
    """Result of a classification run over all pending files."""

    requested: int
    classified: int
    failed: int
    dropped: int
    files: list[FileInfo]
    chart: ChartResponse | None = None


class ClassifyImageResponse(BaseModel):
    """Response for the one-shot classification endpoint."""

    model: str
    tags: list[LabelScoreModel]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    files: int
    run_in_flight: bool
    bounded: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about a selectable model."""

    name: str
    family: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
