"""Offline ASR backend built on sherpa-onnx.

The recognizer decodes one closed utterance at a time. Each call creates its
own stream, so several worker threads can share one loaded model.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from errors import InferenceError
from logger import get_logger
from model_registry import ModelDescriptor
from models import RecognitionResult

try:
    import sherpa_onnx
except Exception:  # pragma: no cover
    sherpa_onnx = None  # type: ignore

logger = get_logger("recognizer")


class SherpaOnnxRecognizer:
    def __init__(self, recognizer: object, model_id: str) -> None:
        self._recognizer = recognizer
        self.model_id = model_id

    @classmethod
    def from_descriptor(
        cls,
        descriptor: ModelDescriptor,
        model_dir: Path,
        num_threads: int = 2,
        sample_rate: int = 16000,
    ) -> "SherpaOnnxRecognizer":
        if sherpa_onnx is None:
            raise RuntimeError("sherpa-onnx is not installed")
        model = str(model_dir / descriptor.files[0])
        tokens = str(model_dir / descriptor.files[1])
        if descriptor.engine == "sense_voice":
            recognizer = sherpa_onnx.OfflineRecognizer.from_sense_voice(
                model=model,
                tokens=tokens,
                num_threads=num_threads,
                sample_rate=sample_rate,
                use_itn=True,
                language="auto",
            )
        elif descriptor.engine == "paraformer":
            recognizer = sherpa_onnx.OfflineRecognizer.from_paraformer(
                paraformer=model,
                tokens=tokens,
                num_threads=num_threads,
                sample_rate=sample_rate,
                feature_dim=80,
                decoding_method="greedy_search",
            )
        else:
            raise RuntimeError(f"unsupported ASR engine: {descriptor.engine}")
        logger.info("loaded ASR model %s (%s)", descriptor.id, descriptor.engine)
        return cls(recognizer, descriptor.id)

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> RecognitionResult:
        try:
            stream = self._recognizer.create_stream()
            stream.accept_waveform(sample_rate, samples.astype(np.float32, copy=False))
            self._recognizer.decode_stream(stream)
            result = stream.result
        except Exception as exc:
            raise InferenceError(f"{self.model_id}: {exc}") from exc
        return RecognitionResult(text=str(result.text).strip(), confidence=_confidence(result))


def _confidence(result: object) -> Optional[float]:
    """Mean token probability when the backend reports log-probs."""
    log_probs = getattr(result, "ys_log_probs", None)
    if not log_probs:
        return None
    values = [float(v) for v in log_probs]
    return float(math.exp(sum(values) / len(values)))


def make_asr_loader(
    num_threads: int = 2,
    sample_rate: int = 16000,
) -> Callable[[ModelDescriptor, Optional[Path]], object]:
    def load(descriptor: ModelDescriptor, model_dir: Optional[Path]) -> object:
        if model_dir is None:
            raise RuntimeError(f"{descriptor.id} has no install directory")
        return SherpaOnnxRecognizer.from_descriptor(descriptor, model_dir, num_threads, sample_rate)

    return load
