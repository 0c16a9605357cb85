from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from errors import InferenceError
from model_registry import PARAFORMER_MODEL_ID, SENSEVOICE_MODEL_ID, ModelRegistry
from recognizer import SherpaOnnxRecognizer, make_asr_loader


def _backend(text: str = " 今天天气不错 ", log_probs: list[float] | None = None) -> MagicMock:
    backend = MagicMock()
    stream = MagicMock()
    stream.result = SimpleNamespace(text=text, ys_log_probs=log_probs)
    backend.create_stream.return_value = stream
    return backend


def test_transcribe_decodes_one_stream_per_call() -> None:
    backend = _backend()
    recognizer = SherpaOnnxRecognizer(backend, "paraformer")
    samples = np.zeros(1600, dtype=np.float64)

    result = recognizer.transcribe(samples, 16000)

    assert result.text == "今天天气不错"
    assert result.confidence is None
    stream = backend.create_stream.return_value
    rate, waveform = stream.accept_waveform.call_args.args
    assert rate == 16000
    assert waveform.dtype == np.float32
    backend.decode_stream.assert_called_once_with(stream)

    recognizer.transcribe(samples, 16000)
    assert backend.create_stream.call_count == 2


def test_confidence_from_log_probs() -> None:
    recognizer = SherpaOnnxRecognizer(_backend(log_probs=[0.0, 0.0]), "m")
    assert recognizer.transcribe(np.zeros(10, dtype=np.float32), 16000).confidence == pytest.approx(1.0)


def test_decoder_error_becomes_inference_error() -> None:
    backend = _backend()
    backend.decode_stream.side_effect = RuntimeError("onnxruntime failure")
    with pytest.raises(InferenceError, match="onnxruntime failure"):
        SherpaOnnxRecognizer(backend, "m").transcribe(np.zeros(10, dtype=np.float32), 16000)


@patch("recognizer.sherpa_onnx")
def test_paraformer_model_is_loaded_from_install_dir(mock_sherpa: MagicMock, tmp_path: Path) -> None:
    descriptor = ModelRegistry().get(PARAFORMER_MODEL_ID)
    recognizer = make_asr_loader(num_threads=3)(descriptor, tmp_path)

    kwargs = mock_sherpa.OfflineRecognizer.from_paraformer.call_args.kwargs
    assert kwargs["paraformer"] == str(tmp_path / "model.int8.onnx")
    assert kwargs["tokens"] == str(tmp_path / "tokens.txt")
    assert kwargs["num_threads"] == 3
    assert recognizer.model_id == PARAFORMER_MODEL_ID


@patch("recognizer.sherpa_onnx")
def test_sense_voice_model_uses_itn(mock_sherpa: MagicMock, tmp_path: Path) -> None:
    descriptor = ModelRegistry().get(SENSEVOICE_MODEL_ID)
    make_asr_loader()(descriptor, tmp_path)
    kwargs = mock_sherpa.OfflineRecognizer.from_sense_voice.call_args.kwargs
    assert kwargs["use_itn"] is True
    assert kwargs["model"] == str(tmp_path / "model.int8.onnx")


def test_loader_requires_install_dir() -> None:
    descriptor = ModelRegistry().get(PARAFORMER_MODEL_ID)
    with pytest.raises(RuntimeError):
        make_asr_loader()(descriptor, None)


def test_missing_library_is_reported(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    import recognizer as recognizer_mod

    monkeypatch.setattr(recognizer_mod, "sherpa_onnx", None)
    descriptor = ModelRegistry().get(PARAFORMER_MODEL_ID)
    with pytest.raises(RuntimeError, match="sherpa-onnx is not installed"):
        SherpaOnnxRecognizer.from_descriptor(descriptor, tmp_path)
