"""Pydantic request/response schemas for the DecisionMaker API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from decisionmaker.component import ComponentState
    from decisionmaker.ml.image_classifier import Prediction


class ClassificationResult(BaseModel):
    """Top-1 prediction as shown in the results panel."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)
    probability_display: str = Field(description="Probability with 4 decimal places")

    @classmethod
    def from_prediction(cls, prediction: Prediction) -> ClassificationResult:
        return cls(
            label=prediction.label,
            probability=prediction.probability,
            probability_display=prediction.display_probability,
        )


class StateResponse(BaseModel):
    """Current component state."""

    phase: str = Field(description="'idle', 'image_captured', 'classifying', or 'classified'")
    model_loaded: bool
    camera_active: bool
    image_data: str | None = Field(default=None, description="Captured image as a data URL")
    result: ClassificationResult | None = None

    @classmethod
    def from_state(cls, state: ComponentState) -> StateResponse:
        return cls(
            phase=state.phase.value,
            model_loaded=state.model_loaded,
            camera_active=state.camera_active,
            image_data=state.image_data,
            result=ClassificationResult.from_prediction(state.result) if state.result is not None else None,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    models_loaded: list[str]
    camera_active: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    repo_id: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
