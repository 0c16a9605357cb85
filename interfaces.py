"""Protocol interfaces used by the pipeline and the state machine."""

from __future__ import annotations

from queue import Queue
from typing import Any, Optional, Protocol

import numpy as np

from models import AudioFrame, RecognitionResult


class Recorder(Protocol):
    def start(self, frame_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self, drain: bool = True) -> None: ...

    @property
    def overruns(self) -> int: ...


class SpeechClassifier(Protocol):
    def is_speech(self, samples: np.ndarray) -> bool: ...

    def reset(self) -> None: ...


class VadModel(Protocol):
    def create_classifier(self) -> SpeechClassifier: ...


class SpeechRecognizer(Protocol):
    def transcribe(self, samples: np.ndarray, sample_rate: int) -> RecognitionResult: ...


class PunctuationModel(Protocol):
    def add_punctuation(self, text: str) -> str: ...


class PolishBackend(Protocol):
    def complete(
        self,
        system_prompt: str,
        text: str,
        timeout_s: float,
        max_tokens: Optional[int] = None,
    ) -> tuple[str, int]: ...


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...
