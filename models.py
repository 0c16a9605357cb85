"""Core data models for the dictation pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


class AudioStateType(str, Enum):
    IDLE = "idle"
    DICTATING = "dictating"
    TRANSCRIBING = "transcribing"


class DictationMode(str, Enum):
    NORMAL = "normal"
    DIARY = "diary"


class TranscribingStage(str, Enum):
    ASR = "asr"
    POLISHING = "polishing"


class ModelKind(str, Enum):
    ASR = "asr"
    VAD = "vad"
    PUNCTUATION = "punc"
    LLM = "llm"


class HistoryKind(str, Enum):
    DICTATION = "dictation"
    DIARY = "diary"

    @classmethod
    def for_mode(cls, mode: DictationMode) -> "HistoryKind":
        return cls.DIARY if mode == DictationMode.DIARY else cls.DICTATION


class PolishStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"


@dataclass(frozen=True)
class AudioState:
    type: AudioStateType
    mode: Optional[DictationMode] = None
    stage: Optional[TranscribingStage] = None

    @classmethod
    def idle(cls) -> "AudioState":
        return cls(AudioStateType.IDLE)

    @classmethod
    def dictating(cls, mode: DictationMode) -> "AudioState":
        return cls(AudioStateType.DICTATING, mode=mode)

    @classmethod
    def transcribing(cls, stage: TranscribingStage) -> "AudioState":
        return cls(AudioStateType.TRANSCRIBING, stage=stage)

    def to_payload(self) -> dict:
        payload: dict = {"type": self.type.value}
        if self.mode is not None:
            payload["mode"] = self.mode.value
        if self.stage is not None:
            payload["stage"] = self.stage.value
        return payload


@dataclass
class AudioFrame:
    samples: np.ndarray
    sample_rate: int = 16000
    sequence: int = 0
    timestamp_ms: int = 0

    @property
    def duration_ms(self) -> float:
        return len(self.samples) * 1000.0 / self.sample_rate


@dataclass
class Utterance:
    samples: np.ndarray
    start_ms: int
    end_ms: int
    sequence: int
    sample_rate: int = 16000

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass
class RecognitionResult:
    text: str
    confidence: Optional[float] = None


@dataclass
class TranscriptSegment:
    sequence: int
    text: str
    confidence: Optional[float] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class PolishResult:
    text: str
    status: PolishStatus
    error: Optional[str] = None
    total_tokens: int = 0
    llm_model: Optional[str] = None
    llm_variant_id: Optional[str] = None


@dataclass
class HistoryEntry:
    id: str
    kind: HistoryKind
    text: str
    created_at: str
    duration_seconds: int = 0
    title: Optional[str] = None
    raw_text: Optional[str] = None
    audio_file_path: Optional[str] = None
    asr_model: Optional[str] = None
    asr_variant_id: Optional[str] = None
    llm_model: Optional[str] = None
    llm_variant_id: Optional[str] = None
    total_words: int = 0
    llm_total_tokens: Optional[int] = None
    polish_status: PolishStatus = PolishStatus.SKIPPED
    polish_error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["polish_status"] = self.polish_status.value
        return data


@dataclass
class NewHistoryEntry:
    text: str
    kind: HistoryKind = HistoryKind.DICTATION
    title: Optional[str] = None
    raw_text: Optional[str] = None
    duration_seconds: int = 0
    audio_file_path: Optional[str] = None
    asr_model: Optional[str] = None
    asr_variant_id: Optional[str] = None
    llm_model: Optional[str] = None
    llm_variant_id: Optional[str] = None
    llm_total_tokens: Optional[int] = None
    polish_status: PolishStatus = PolishStatus.SKIPPED
    polish_error: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class HistoryListFilter:
    kind: Optional[HistoryKind] = None
    limit: int = 50
    offset: int = 0


@dataclass
class HistoryStats:
    total_entries: int = 0
    total_words: int = 0
    total_duration_seconds: int = 0


@dataclass
class SessionOutcome:
    """What a finished stop() produced."""

    session_id: int
    text: str = ""
    raw_text: str = ""
    duration_seconds: float = 0.0
    utterance_count: int = 0
    failed_utterances: int = 0
    entry: Optional[HistoryEntry] = None
    no_speech: bool = False
    cancelled: bool = False
    polish_status: PolishStatus = PolishStatus.SKIPPED
    warnings: list[str] = field(default_factory=list)
