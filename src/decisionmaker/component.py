"""The decision component: model lifecycle, image acquisition, and classification.

State per image:
    IDLE -> IMAGE_CAPTURED -> CLASSIFYING -> CLASSIFIED

A new image at any point resets to IMAGE_CAPTURED. Every classification
request takes a generation number; results from an older generation than
the newest request are dropped so a slow classification never overwrites a
newer one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, TypeVar

from decisionmaker.capture.camera import stop_stream
from decisionmaker.ml.image_classifier import ClassificationError
from decisionmaker.ml.preprocessing import decode_image_data, encode_data_url

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from decisionmaker.capture.camera import Camera
    from decisionmaker.ml.image_classifier import ImageClassifier, Prediction

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DECISION_THRESHOLD = 0.8


class Phase(StrEnum):
    IDLE = "idle"
    IMAGE_CAPTURED = "image_captured"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"


class Decision(StrEnum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class UploadedFile(Protocol):
    """The parts of a file upload the component reads (FastAPI's UploadFile fits)."""

    @property
    def content_type(self) -> str | None: ...

    async def read(self, size: int = -1) -> bytes: ...


class Runner(Protocol):
    def __call__(self, func: Callable[..., T], *args: object) -> Awaitable[T]: ...


@dataclass(frozen=True)
class ComponentState:
    """Snapshot of everything the results panel renders."""

    phase: Phase
    model_loaded: bool
    camera_active: bool
    image_data: str | None
    result: Prediction | None


def decide(prediction: Prediction, threshold: float = DEFAULT_DECISION_THRESHOLD) -> Decision:
    """Positive iff the top-1 probability is strictly above the threshold."""
    if prediction.probability > threshold:
        logger.info("Positive decision: %s", prediction.label)
        return Decision.POSITIVE
    logger.info("Negative decision")
    return Decision.NEGATIVE


class DecisionComponent:
    """Holds the model handle, the current image, and the latest result."""

    def __init__(
        self,
        load_model: Callable[[], Awaitable[ImageClassifier]],
        *,
        camera: Camera | None = None,
        run: Runner | None = None,
        threshold: float = DEFAULT_DECISION_THRESHOLD,
        max_image_pixels: int | None = None,
    ) -> None:
        self._load_model = load_model
        self._camera = camera
        self._run: Runner = run or asyncio.to_thread
        self._threshold = threshold
        self._max_image_pixels = max_image_pixels

        self._mounted = False
        self._model: ImageClassifier | None = None
        self._phase = Phase.IDLE
        self._image_data: str | None = None
        self._result: Prediction | None = None
        self._generation = 0
        self.last_decision: Decision | None = None

    # -- State ---------------------------------------------------------------

    @property
    def model(self) -> ImageClassifier | None:
        return self._model

    @property
    def model_loaded(self) -> bool:
        return self._model is not None

    @property
    def camera_active(self) -> bool:
        stream = self._camera.stream if self._camera is not None else None
        return stream is not None and stream.active

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def image_data(self) -> str | None:
        return self._image_data

    @property
    def result(self) -> Prediction | None:
        return self._result

    def snapshot(self) -> ComponentState:
        return ComponentState(
            phase=self._phase,
            model_loaded=self.model_loaded,
            camera_active=self.camera_active,
            image_data=self._image_data,
            result=self._result,
        )

    # -- Model lifecycle -----------------------------------------------------

    async def mount(self) -> None:
        """Load the model once. Failures propagate; the component stays unloaded."""
        if self._mounted:
            logger.warning("Component already mounted, ignoring repeated mount")
            return
        self._mounted = True

        logger.info("Loading classification model")
        model = await self._load_model()
        self._model = model
        logger.info("Model %s loaded", model.model_name)

    # -- Image acquisition ---------------------------------------------------

    async def capture_from_webcam(self) -> Prediction | None:
        """Classify the camera's current frame. No-op if the camera is not ready."""
        if self._camera is None:
            logger.debug("No camera attached, ignoring capture")
            return None

        image_data = self._camera.get_screenshot()
        if image_data is None:
            logger.debug("Camera not ready, ignoring capture")
            return None

        self._set_image(image_data)
        return await self.make_decision(image_data)

    async def upload_file(self, file: UploadedFile) -> Prediction | None:
        """Classify an uploaded file and release the camera."""
        data = await file.read()
        if not data:
            logger.debug("Empty upload, ignoring")
            return None

        image_data = encode_data_url(data, file.content_type)
        self._set_image(image_data)

        if stop_stream(self._camera):
            logger.info("Camera stopped after file upload")

        return await self.make_decision(image_data)

    def _set_image(self, image_data: str) -> None:
        self._image_data = image_data
        self._phase = Phase.IMAGE_CAPTURED

    # -- Classification ------------------------------------------------------

    async def make_decision(self, image_data: str) -> Prediction | None:
        """Classify an image and store its top-1 prediction.

        Returns the stored prediction, or None when the model is not loaded
        or a newer request superseded this one.
        """
        model = self._model
        if model is None:
            logger.debug("Model not loaded, ignoring classification request")
            return None

        self._generation += 1
        generation = self._generation
        self._phase = Phase.CLASSIFYING

        try:
            predictions = await self._run(self._classify, model, image_data)
        except Exception:
            logger.exception("Classification failed")
            if generation == self._generation:
                self._phase = Phase.IMAGE_CAPTURED
            raise

        if generation != self._generation:
            logger.info("Dropping stale classification result (generation %d)", generation)
            return None

        top = predictions[0]
        self._result = top
        self._phase = Phase.CLASSIFIED
        self.last_decision = decide(top, self._threshold)
        return top

    def _classify(self, model: ImageClassifier, image_data: str) -> list[Prediction]:
        image = decode_image_data(image_data, max_pixels=self._max_image_pixels)
        predictions = model.classify(image)
        if not predictions:
            raise ClassificationError(f"{model.model_name} returned no predictions")
        return predictions
