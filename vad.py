"""Voice activity detection and utterance segmentation."""

from __future__ import annotations

import math
from collections import deque
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from interfaces import SpeechClassifier
from logger import get_logger
from model_registry import ModelDescriptor
from models import AudioFrame, Utterance

try:
    import sherpa_onnx
except Exception:  # pragma: no cover
    sherpa_onnx = None  # type: ignore

try:
    import webrtcvad
except Exception:  # pragma: no cover
    webrtcvad = None  # type: ignore

logger = get_logger("vad")

SILERO_WINDOW = 512


class SileroClassifier:
    """Silero VAD through sherpa-onnx, fed in 512-sample windows."""

    def __init__(self, model_path: Path, sample_rate: int = 16000, threshold: float = 0.5) -> None:
        if sherpa_onnx is None:
            raise RuntimeError("sherpa-onnx is not installed")
        config = sherpa_onnx.VadModelConfig()
        config.silero_vad.model = str(model_path)
        config.silero_vad.threshold = threshold
        config.silero_vad.min_silence_duration = 0.1
        config.silero_vad.min_speech_duration = 0.1
        config.silero_vad.window_size = SILERO_WINDOW
        config.sample_rate = sample_rate
        config.num_threads = 1
        self._vad = sherpa_onnx.VoiceActivityDetector(config, buffer_size_in_seconds=30)
        self._pending = np.zeros(0, dtype=np.float32)
        self._speech = False

    def is_speech(self, samples: np.ndarray) -> bool:
        self._pending = np.concatenate([self._pending, samples.astype(np.float32, copy=False)])
        while len(self._pending) >= SILERO_WINDOW:
            window = self._pending[:SILERO_WINDOW]
            self._pending = self._pending[SILERO_WINDOW:]
            self._vad.accept_waveform(window)
            self._speech = bool(self._vad.is_speech_detected())
            # segmentation happens downstream, drop sherpa's own segments
            while not self._vad.empty():
                self._vad.pop()
        return self._speech

    def reset(self) -> None:
        self._vad.reset()
        self._pending = np.zeros(0, dtype=np.float32)
        self._speech = False


class WebRtcClassifier:
    def __init__(self, aggressiveness: int = 2, sample_rate: int = 16000) -> None:
        if webrtcvad is None:
            raise RuntimeError("webrtcvad is not installed")
        self._vad = webrtcvad.Vad(int(min(3, max(0, aggressiveness))))
        self._sample_rate = sample_rate
        self._chunk = sample_rate * 30 // 1000

    def is_speech(self, samples: np.ndarray) -> bool:
        pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
        flags = []
        for offset in range(0, len(pcm) - self._chunk + 1, self._chunk):
            chunk = pcm[offset : offset + self._chunk].tobytes()
            flags.append(bool(self._vad.is_speech(chunk, self._sample_rate)))
        return any(flags)

    def reset(self) -> None:
        pass


class SileroVadModel:
    def __init__(self, model_path: Path, sample_rate: int = 16000, threshold: float = 0.5) -> None:
        self.model_path = model_path
        self.sample_rate = sample_rate
        self.threshold = threshold

    def create_classifier(self) -> SpeechClassifier:
        return SileroClassifier(self.model_path, self.sample_rate, self.threshold)


class WebRtcVadModel:
    def __init__(self, aggressiveness: int = 2, sample_rate: int = 16000) -> None:
        self.aggressiveness = aggressiveness
        self.sample_rate = sample_rate

    def create_classifier(self) -> SpeechClassifier:
        return WebRtcClassifier(self.aggressiveness, self.sample_rate)


def make_vad_loader(
    sample_rate: int = 16000,
    threshold: float = 0.5,
    aggressiveness: int = 2,
) -> Callable[[ModelDescriptor, Optional[Path]], object]:
    def load(descriptor: ModelDescriptor, model_dir: Optional[Path]) -> object:
        if descriptor.engine == "webrtc":
            return WebRtcVadModel(aggressiveness, sample_rate)
        if model_dir is None:
            raise RuntimeError(f"{descriptor.id} has no install directory")
        return SileroVadModel(model_dir / descriptor.files[0], sample_rate, threshold)

    return load


class VoiceActivityDetector:
    """Merges per-frame speech decisions into closed utterances.

    An utterance opens after ``enter_frames`` consecutive speech frames
    (with up to ``pre_roll_ms`` of audio before the onset) and closes once
    ``hangover_ms`` of silence followed the last speech frame. Only
    ``tail_pad_ms`` of that trailing silence is kept.
    """

    def __init__(
        self,
        classifier: SpeechClassifier,
        frame_ms: int = 30,
        hangover_ms: int = 3000,
        tail_pad_ms: int = 300,
        pre_roll_ms: int = 150,
        enter_frames: int = 3,
        min_utterance_ms: int = 250,
        max_utterance_ms: int = 30000,
    ) -> None:
        self._classifier = classifier
        self.frame_ms = frame_ms
        self._hangover_frames = max(1, math.ceil(hangover_ms / frame_ms))
        self._tail_pad_frames = max(0, math.ceil(tail_pad_ms / frame_ms))
        self._enter_frames = max(1, enter_frames)
        self._min_speech_frames = max(1, math.ceil(min_utterance_ms / frame_ms))
        self._max_frames = max(self._hangover_frames + 1, max_utterance_ms // frame_ms)
        pre_roll_frames = math.ceil(pre_roll_ms / frame_ms)
        self._pre_roll: deque[AudioFrame] = deque(maxlen=pre_roll_frames + self._enter_frames)

        self._in_speech = False
        self._speech_run = 0
        self._silence_run = 0
        self._speech_frames = 0
        self._current: list[AudioFrame] = []
        self._continuation = False
        self._next_sequence = 0
        self.discarded = 0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    @property
    def emitted(self) -> int:
        return self._next_sequence

    def process(self, frame: AudioFrame) -> list[Utterance]:
        speech = self._classifier.is_speech(frame.samples)

        if not self._in_speech:
            self._pre_roll.append(frame)
            self._speech_run = self._speech_run + 1 if speech else 0
            if self._speech_run >= self._enter_frames:
                self._in_speech = True
                self._current = list(self._pre_roll)
                self._pre_roll.clear()
                self._speech_frames = self._speech_run
                self._speech_run = 0
                self._silence_run = 0
            return []

        self._current.append(frame)
        if speech:
            self._silence_run = 0
            self._speech_frames += 1
        else:
            self._silence_run += 1

        if self._silence_run >= self._hangover_frames:
            return self._close(end_of_speech=True)
        if len(self._current) >= self._max_frames:
            logger.debug("utterance reached max length, splitting")
            return self._close(end_of_speech=False)
        return []

    def flush(self) -> list[Utterance]:
        """Close any open utterance immediately (end of session)."""
        if not self._in_speech:
            return []
        return self._close(end_of_speech=True)

    def reset(self) -> None:
        self._classifier.reset()
        self._pre_roll.clear()
        self._in_speech = False
        self._speech_run = 0
        self._silence_run = 0
        self._speech_frames = 0
        self._current = []
        self._continuation = False

    def _close(self, end_of_speech: bool) -> list[Utterance]:
        frames = self._current
        excess = self._silence_run - self._tail_pad_frames
        if excess > 0:
            frames = frames[: len(frames) - excess]
        speech_frames = self._speech_frames
        # the piece after a forced split keeps speech that was already accepted
        continuation = self._continuation
        self._continuation = not end_of_speech

        self._current = []
        self._speech_frames = 0
        self._silence_run = 0
        if end_of_speech:
            self._in_speech = False
            self._speech_run = 0

        too_short = speech_frames < self._min_speech_frames and not continuation
        if not frames or speech_frames == 0 or too_short:
            self.discarded += 1
            logger.debug("discarded short utterance (%d speech frames)", speech_frames)
            return []

        last = frames[-1]
        utterance = Utterance(
            samples=np.concatenate([f.samples for f in frames]).astype(np.float32, copy=False),
            start_ms=frames[0].timestamp_ms,
            end_ms=last.timestamp_ms + int(round(last.duration_ms)),
            sequence=self._next_sequence,
            sample_rate=last.sample_rate,
        )
        self._next_sequence += 1
        logger.debug(
            "utterance %d closed: %d-%d ms", utterance.sequence, utterance.start_ms, utterance.end_ms
        )
        return [utterance]
