"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, UploadFile, status
from pydantic import ValidationError as PydanticValidationError

from deepimg.api.middleware import require_api_key
from deepimg.api.schemas import (
    AddFilesResponse,
    ChartBucketModel,
    ChartResponse,
    ClassificationSettings,
    ClassifyImageResponse,
    ClassifyRequest,
    ErrorResponse,
    FileInfo,
    FilesResponse,
    HealthResponse,
    LabelScoreModel,
    LegendEntryModel,
    ModelInfo,
    ModelsResponse,
    RunResponse,
)
from deepimg.core.chart import build_chart, display_name
from deepimg.core.classifier import MODEL_REGISTRY
from deepimg.core.files import Candidate, FileStatus
from deepimg.core.runner import classify_pending
from deepimg.errors import RunInProgressError, ValidationError

if TYPE_CHECKING:
    from deepimg.core.classifier import ZeroShotClassifier
    from deepimg.core.files import FileStore, ManagedFile
    from deepimg.core.handles import HandleStore
    from deepimg.core.inference import ClassificationPool

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])

_UPSTREAM_ERRORS: dict[int | str, dict[str, object]] = {
    422: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_store(request: Request) -> FileStore:
    store: FileStore = request.app.state.file_store
    return store


def _get_handles(request: Request) -> HandleStore:
    handles: HandleStore = request.app.state.handle_store
    return handles


def _get_classifier(request: Request) -> ZeroShotClassifier:
    classifier: ZeroShotClassifier = request.app.state.classifier
    return classifier


def _get_pool(request: Request) -> ClassificationPool:
    pool: ClassificationPool = request.app.state.classification_pool
    return pool


def _get_classification_settings(request: Request) -> ClassificationSettings:
    current: ClassificationSettings = request.app.state.classification_settings
    return current


def _file_info(managed: ManagedFile) -> FileInfo:
    result = managed.result
    top = result[0] if result else None
    return FileInfo(
        id=managed.id,
        name=managed.name,
        size=managed.size,
        mime_type=managed.mime_type,
        image_url=managed.display_url,
        status=managed.status.value,
        result=[LabelScoreModel(label=item.label, score=item.score) for item in result] if result is not None else None,
        error=managed.error,
        top_label=display_name(top.label) if top else None,
        top_score_percent=round(top.score * 100) if top else None,
    )


async def _read_upload(upload: UploadFile, limit: int) -> Candidate:
    """Read at most ``limit + 1`` bytes; anything longer is oversize either way."""
    data = await upload.read(limit + 1)
    size = len(data) if upload.size is None else max(upload.size, len(data))
    return Candidate(
        name=upload.filename or "",
        size=size,
        mime_type=upload.content_type or "",
        data=data,
    )


def _chart_response(store: FileStore) -> ChartResponse | None:
    if not store.is_complete:
        return None
    chart = build_chart([f.result for f in store.snapshot if f.status is FileStatus.CLASSIFIED and f.result])
    return ChartResponse(
        buckets=[ChartBucketModel(label=b.label, count=b.count, color=b.color) for b in chart.buckets],
        config={label: LegendEntryModel(label=e.display_name, color=e.color) for label, e in chart.legend.items()},
    )


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@router.post(
    "/files",
    response_model=AddFilesResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add image files",
)
async def add_files(request: Request, files: list[UploadFile]) -> AddFilesResponse:
    """Accept JPEG, PNG and WebP files up to the size limit, skipping duplicates."""
    store = _get_store(request)
    limit = request.app.state.settings.max_file_size
    candidates = [await _read_upload(upload, limit) for upload in files]

    outcome = store.add_files(candidates)
    return AddFilesResponse(
        accepted=[_file_info(managed) for managed in outcome.accepted],
        oversized=list(outcome.oversized),
        duplicates=outcome.duplicates,
        unsupported=outcome.unsupported,
        oversize_notice=store.oversize_notice.active,
    )


@router.get("/files", response_model=FilesResponse, summary="List files")
async def list_files(request: Request) -> FilesResponse:
    store = _get_store(request)
    return FilesResponse(
        files=[_file_info(managed) for managed in store.snapshot],
        oversize_notice=store.oversize_notice.active,
        run_in_flight=store.run_in_flight,
    )


@router.delete(
    "/files/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Remove a file",
)
async def remove_file(request: Request, file_id: str) -> Response:
    """Remove a file and revoke its display handle."""
    store = _get_store(request)
    try:
        store.remove(file_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown file: {file_id}") from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/blobs/{token}",
    response_class=Response,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Image bytes behind a display handle",
)
async def get_blob(request: Request, token: str) -> Response:
    blob = _get_handles(request).resolve(token)
    if blob is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Display handle revoked or unknown")
    return Response(content=blob.data, media_type=blob.mime_type)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@router.post(
    "/classify",
    response_model=RunResponse,
    responses={**_UPSTREAM_ERRORS, status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Classify all pending files",
)
async def classify_files(request: Request, body: ClassifyRequest | None = None) -> RunResponse:
    """Classify every pending file with the current settings and wait for all results.

    Returns 409 while another run is in flight.
    """
    store = _get_store(request)
    current = _get_classification_settings(request)
    if not current.labels:
        raise ValidationError("At least one candidate label is required")
    if store.run_in_flight:
        raise RunInProgressError("A classification run is already in progress")
    if body is not None and body.retry_failed:
        store.reset_failed()

    summary = await classify_pending(
        store,
        _get_classifier(request),
        _get_pool(request),
        current.model,
        current.labels,
    )
    return RunResponse(
        requested=summary.requested,
        classified=summary.classified,
        failed=summary.failed,
        dropped=summary.dropped,
        files=[_file_info(managed) for managed in store.snapshot],
        chart=_chart_response(store),
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_UPSTREAM_ERRORS,
    summary="Classify a single image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    model: Annotated[str | None, Form()] = None,
    labels: Annotated[str | None, Form(description="Candidate labels joined by ';'")] = None,
) -> ClassifyImageResponse:
    """Classify one uploaded image without adding it to the collection."""
    current = _get_classification_settings(request)
    try:
        requested = ClassificationSettings(
            model=model or current.model,
            labels=labels.split(";") if labels is not None else current.labels,
        )
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc

    limit = request.app.state.settings.max_file_size
    upload = await _read_upload(file, limit)
    if upload.size > limit:
        raise ValidationError(f"Image exceeds {limit} bytes")
    output = await _get_pool(request).run(
        _get_classifier(request).classify, upload.data, requested.model, requested.labels
    )
    return ClassifyImageResponse(
        model=requested.model,
        tags=[LabelScoreModel(label=item.label, score=item.score) for item in output],
    )


@router.get(
    "/chart",
    response_model=ChartResponse,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Label frequency chart",
)
async def get_chart(request: Request) -> ChartResponse:
    """Top-label histogram, available once no file is pending and no run is in flight."""
    chart = _chart_response(_get_store(request))
    if chart is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Chart is available once every file has been classified",
        )
    return chart


# ---------------------------------------------------------------------------
# Settings, models, health
# ---------------------------------------------------------------------------


@router.get("/settings", response_model=ClassificationSettings, summary="Current classification settings")
async def get_classification_settings(request: Request) -> ClassificationSettings:
    return _get_classification_settings(request)


@router.put("/settings", response_model=ClassificationSettings, summary="Update classification settings")
async def update_classification_settings(request: Request, body: ClassificationSettings) -> ClassificationSettings:
    """Replace the model and candidate labels used by the next run."""
    request.app.state.classification_settings = body
    return body


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the selectable models, marking the one in use."""
    active = _get_classification_settings(request).model
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                family=spec.family,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    store = _get_store(request)
    pool = _get_pool(request)
    return HealthResponse(
        status="ok",
        files=len(store),
        run_in_flight=store.run_in_flight,
        bounded=pool.bounded,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
