"""API route definitions."""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from decisionmaker.api.middleware import verify_api_key
from decisionmaker.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    StateResponse,
)
from decisionmaker.ml.image_classifier import ClassificationError
from decisionmaker.ml.model_manager import MODEL_REGISTRY
from decisionmaker.ml.preprocessing import ImageDecodeError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from decisionmaker.component import DecisionComponent
    from decisionmaker.config import Settings
    from decisionmaker.ml.inference import InferencePool
    from decisionmaker.ml.model_manager import ModelManager

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

# Starlette has renamed this constant across releases.
_CONTENT_TOO_LARGE = HTTPStatus.REQUEST_ENTITY_TOO_LARGE.value

_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_component(request: Request) -> DecisionComponent:
    component: DecisionComponent = request.app.state.component
    return component


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


async def _classify(component: DecisionComponent, pending: Awaitable[object]) -> StateResponse | JSONResponse:
    try:
        await pending
    except ImageDecodeError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except ClassificationError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Classification queue is full, try again")
    return StateResponse.from_state(component.snapshot())


@router.post(
    "/capture",
    response_model=StateResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Capture and classify a webcam frame",
)
async def capture_from_webcam(request: Request) -> StateResponse | JSONResponse:
    """Snapshot the webcam and classify it. A camera that is not ready is ignored."""
    component = _get_component(request)
    return await _classify(component, component.capture_from_webcam())


@router.post(
    "/upload",
    response_model=StateResponse,
    responses={
        **_CLASSIFY_RESPONSES,
        _CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    },
    summary="Upload and classify an image file",
)
async def upload_file(request: Request, file: UploadFile) -> StateResponse | JSONResponse:
    """Classify an uploaded image; stops the webcam if it is running."""
    settings = _get_settings(request)
    component = _get_component(request)

    if not (file.content_type or "").startswith("image/"):
        return _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "Only image uploads are supported")
    if file.size is not None and file.size > settings.max_file_size:
        return _error(
            _CONTENT_TOO_LARGE,
            f"File exceeds the {settings.max_file_size} byte limit",
        )

    return await _classify(component, component.upload_file(file))


@router.get(
    "/state",
    response_model=StateResponse,
    summary="Current image and classification result",
)
async def get_state(request: Request) -> StateResponse:
    """Return the captured image and the latest classification result."""
    return StateResponse.from_state(_get_component(request).snapshot())


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    component = _get_component(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=component.model_loaded,
        models_loaded=_get_model_manager(request).get_loaded_models(),
        camera_active=component.camera_active,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and which one is configured."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            repo_id=spec.repo_id,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
