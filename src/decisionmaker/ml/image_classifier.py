"""Image classification on MobileNet ONNX graphs.

The classifier is the opaque model handle the rest of the app holds: it
takes a decoded image and returns predictions ordered by descending
probability.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from decisionmaker.ml.preprocessing import to_tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession
    from PIL import Image


class ClassificationError(RuntimeError):
    """Raised when the model produces no usable prediction."""


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    probability: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError(f"probability must be within [0, 1], got {self.probability}")

    @property
    def display_probability(self) -> str:
        """Probability formatted the way the results panel shows it."""
        return f"{self.probability:.4f}"


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: Image.Image) -> list[Prediction]:
        """Classify an image and return ranked predictions.

        Args:
            image: RGB PIL image.

        Returns:
            List of predictions sorted by probability (descending).
        """
        ...


def softmax(logits: NDArray[np.floating]) -> NDArray[np.float64]:
    shifted = logits.astype(np.float64) - np.max(logits)
    exp = np.exp(shifted)
    return np.clip(exp / exp.sum(), 0.0, 1.0)


class OnnxImageClassifier:
    """MobileNet classifier backed by an ONNX Runtime session."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        *,
        image_size: int = 224,
        top_k: int = 3,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = list(labels)
        self._image_size = image_size
        self._top_k = top_k
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, image: Image.Image) -> list[Prediction]:
        tensor = to_tensor(image, self._image_size)
        outputs = self._session.run(None, {self._input_name: tensor})
        logits = np.asarray(outputs[0]).reshape(-1)
        if logits.size != len(self._labels):
            raise ClassificationError(
                f"{self._model_name} produced {logits.size} scores for {len(self._labels)} labels"
            )

        if not np.isfinite(logits).all():
            raise ClassificationError(f"{self._model_name} produced non-finite scores")

        probs = softmax(logits)
        top = np.argsort(probs)[::-1][: self._top_k]
        return [Prediction(label=self._labels[i], probability=float(probs[i])) for i in top]
