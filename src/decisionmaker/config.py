"""Environment-based configuration for DecisionMaker."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DECISIONMAKER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DECISIONMAKER_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classifier_model: str = "mobilenet_v2_1.0_224"
    models_dir: str = "models"
    top_k: int = Field(default=3, ge=1)

    # Top-1 probability strictly above this is a positive decision
    decision_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Camera
    camera_enabled: bool = True
    camera_index: int = Field(default=0, ge=0)
    screenshot_quality: float = Field(default=0.92, gt=0.0, le=1.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
