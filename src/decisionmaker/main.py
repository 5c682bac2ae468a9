"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from decisionmaker.ml.image_classifier import ImageClassifier

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from decisionmaker.api.routes import router
from decisionmaker.capture.camera import OpenCVCamera, stop_stream
from decisionmaker.component import DecisionComponent
from decisionmaker.config import Settings, get_settings
from decisionmaker.ml.inference import InferencePool
from decisionmaker.ml.model_manager import OnnxModelManager
from decisionmaker.web.views import router as web_router

logger = logging.getLogger(__name__)


def _log_mount_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Model load failed; classification stays disabled", exc_info=exc)


def build_component(
    settings: Settings,
    model_manager: OnnxModelManager,
    inference_pool: InferencePool,
    camera: OpenCVCamera | None,
) -> DecisionComponent:
    """Wire the decision component to its model loader, camera, and worker pool."""

    async def load_model() -> ImageClassifier:
        return await asyncio.to_thread(model_manager.load_classifier, settings.classifier_model)

    return DecisionComponent(
        load_model,
        camera=camera,
        run=inference_pool.run,
        threshold=settings.decision_threshold,
        max_image_pixels=settings.max_image_pixels,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting DecisionMaker (device=%s, max_concurrent=%s, model=%s, camera=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.camera_index if settings.camera_enabled else "disabled",
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    camera: OpenCVCamera | None = None
    if settings.camera_enabled:
        camera = OpenCVCamera(settings.camera_index, settings.screenshot_quality)
        camera.start()

    component = build_component(settings, model_manager, inference_pool, camera)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.component = component

    # The page is usable while the model loads; captures are ignored until then.
    mount_task = asyncio.create_task(component.mount())
    mount_task.add_done_callback(_log_mount_failure)

    logger.info("DecisionMaker ready")
    yield

    logger.info("Shutting down DecisionMaker")
    mount_task.cancel()
    stop_stream(camera)
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("DecisionMaker shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="DecisionMaker",
        description="Webcam and upload image classification with a thresholded decision",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(web_router)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("decisionmaker.main:app", host=settings.host, port=settings.port)
