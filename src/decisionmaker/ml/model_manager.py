"""Model manager: download, load, and cache MobileNet ONNX models.

Handles downloading model graphs and label maps from HuggingFace, creating
and caching ONNX InferenceSessions, and building the classifier handle the
decision component holds for its lifetime.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from decisionmaker.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from decisionmaker.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def load_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Return a ready-to-use classifier for the model."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single MobileNet export."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    config_filename: str
    image_size: int
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v1_1.0_224": ModelSpec(
        name="mobilenet_v1_1.0_224",
        repo_id="Xenova/mobilenet_v1_1.0_224",
        filename="model.onnx",
        subfolder="onnx",
        config_filename="config.json",
        image_size=224,
        license="other",
    ),
    "mobilenet_v2_1.0_224": ModelSpec(
        name="mobilenet_v2_1.0_224",
        repo_id="Xenova/mobilenet_v2_1.0_224",
        filename="model.onnx",
        subfolder="onnx",
        config_filename="config.json",
        image_size=224,
        license="other",
    ),
    "mobilenet_v2_1.4_224": ModelSpec(
        name="mobilenet_v2_1.4_224",
        repo_id="Xenova/mobilenet_v2_1.4_224",
        filename="model.onnx",
        subfolder="onnx",
        config_filename="config.json",
        image_size=224,
        license="other",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads, and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._config_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model graph from HuggingFace if not already present locally."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir / spec.name),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def load_labels(self, model_name: str) -> list[str]:
        """Return the model's class labels ordered by output index."""
        spec = self._get_spec(model_name)

        config_path = self._config_paths.get(model_name)
        if config_path is None or not config_path.exists():
            config_path = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.config_filename,
                    local_dir=str(self._models_dir / spec.name),
                )
            )
            self._config_paths[model_name] = config_path

        config = json.loads(config_path.read_text(encoding="utf-8"))
        id2label: dict[str, str] = config.get("id2label") or {}
        if not id2label:
            raise ValueError(f"{spec.config_filename} for {model_name} has no id2label mapping")
        return [id2label[str(index)] for index in range(len(id2label))]

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def load_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Build the classifier handle for a model, downloading it on first use."""
        spec = self._get_spec(model_name)
        labels = self.load_labels(model_name)
        session = self.get_session(model_name)
        logger.info("Classifier %s ready (%d labels)", model_name, len(labels))
        return OnnxImageClassifier(
            model_name,
            session,
            labels,
            image_size=spec.image_size,
            top_k=self._settings.top_k,
        )

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
