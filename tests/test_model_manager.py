"""Tests for the ONNX model manager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from decisionmaker.config import Settings
from decisionmaker.ml.image_classifier import OnnxImageClassifier
from decisionmaker.ml.model_manager import MODEL_REGISTRY, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(models_dir: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(models_dir),
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
        "top_k": 3,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _fake_hub(id2label: dict[str, str]) -> MagicMock:
    """hf_hub_download stand-in that writes config.json and reports graph paths."""

    def download(repo_id: str, filename: str, subfolder: str | None = None, local_dir: str | None = None) -> str:
        target = Path(local_dir or ".") / (subfolder or "") / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        if filename == "config.json":
            target.write_text(json.dumps({"id2label": id2label}), encoding="utf-8")
        else:
            target.write_bytes(b"onnx")
        return str(target)

    return MagicMock(side_effect=download)


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v2_1.0_224"]
        assert spec.repo_id == "Xenova/mobilenet_v2_1.0_224"
        assert spec.image_size == 224

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_default_model_is_registered(self, tmp_path: Path) -> None:
        assert _make_settings(tmp_path).classifier_model in MODEL_REGISTRY

    def test_registry_has_three_models(self) -> None:
        assert len(MODEL_REGISTRY) == 3


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("decisionmaker.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        expected = tmp_path / "mobilenet_v2_1.0_224" / "onnx" / "model.onnx"
        mock_download.return_value = str(expected)
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_downloaded("mobilenet_v2_1.0_224")

        mock_download.assert_called_once_with(
            repo_id="Xenova/mobilenet_v2_1.0_224",
            filename="model.onnx",
            subfolder="onnx",
            local_dir=str(tmp_path / "mobilenet_v2_1.0_224"),
        )
        assert path == expected

    @patch("decisionmaker.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "model.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(tmp_path))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["mobilenet_v2_1.0_224"] = model_file

        path = mgr.ensure_downloaded("mobilenet_v2_1.0_224")

        mock_download.assert_not_called()
        assert path == model_file

    def test_load_labels_orders_by_index(self, tmp_path: Path) -> None:
        hub = _fake_hub({"1": "tabby cat", "0": "background", "2": "goldfish"})
        with patch("decisionmaker.ml.model_manager.hf_hub_download", hub):
            mgr = OnnxModelManager(_make_settings(tmp_path))
            labels = mgr.load_labels("mobilenet_v1_1.0_224")

        assert labels == ["background", "tabby cat", "goldfish"]
        assert hub.call_args.kwargs["filename"] == "config.json"

    def test_load_labels_reuses_downloaded_config(self, tmp_path: Path) -> None:
        hub = _fake_hub({"0": "background"})
        with patch("decisionmaker.ml.model_manager.hf_hub_download", hub):
            mgr = OnnxModelManager(_make_settings(tmp_path))
            mgr.load_labels("mobilenet_v2_1.0_224")
            mgr.load_labels("mobilenet_v2_1.0_224")

        assert hub.call_count == 1

    def test_load_labels_without_mapping_raises(self, tmp_path: Path) -> None:
        hub = _fake_hub({})
        with patch("decisionmaker.ml.model_manager.hf_hub_download", hub):
            mgr = OnnxModelManager(_make_settings(tmp_path))
            with pytest.raises(ValueError, match="id2label"):
                mgr.load_labels("mobilenet_v2_1.0_224")

    @patch("decisionmaker.ml.model_manager.InferenceSession")
    @patch("decisionmaker.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "model.onnx")
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        mgr = OnnxModelManager(_make_settings(tmp_path))

        session1 = mgr.get_session("mobilenet_v2_1.0_224")
        session2 = mgr.get_session("mobilenet_v2_1.0_224")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("decisionmaker.ml.model_manager.InferenceSession")
    def test_load_classifier_builds_handle(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        hub = _fake_hub({"0": "background", "1": "tabby cat"})
        with patch("decisionmaker.ml.model_manager.hf_hub_download", hub):
            mgr = OnnxModelManager(_make_settings(tmp_path, top_k=1))
            classifier = mgr.load_classifier("mobilenet_v2_1.0_224")

        assert isinstance(classifier, OnnxImageClassifier)
        assert classifier.model_name == "mobilenet_v2_1.0_224"
        assert classifier._labels == ["background", "tabby cat"]
        assert classifier._top_k == 1
        assert mgr.get_loaded_models() == ["mobilenet_v2_1.0_224"]

    @patch("decisionmaker.ml.model_manager.InferenceSession")
    @patch("decisionmaker.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "model.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.get_loaded_models() == []
        mgr.get_session("mobilenet_v2_1.0_224")
        assert mgr.get_loaded_models() == ["mobilenet_v2_1.0_224"]

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="openvino"))
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("decisionmaker.ml.model_manager.InferenceSession")
    @patch("decisionmaker.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "model.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        mgr.get_session("mobilenet_v2_1.0_224")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
