"""Capture -> segmentation -> recognition wiring for one session."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Optional

import numpy as np

from interfaces import Recorder
from logger import get_logger
from models import AudioFrame, TranscriptSegment
from transcription import TranscriptionEngine
from vad import VoiceActivityDetector

logger = get_logger("pipeline")


@dataclass
class PipelineResult:
    segments: list[TranscriptSegment] = field(default_factory=list)
    samples: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))
    sample_rate: int = 16000
    duration_ms: int = 0
    utterance_count: int = 0
    failures: int = 0
    overruns: int = 0
    discarded_utterances: int = 0
    cancelled: bool = False


class DictationPipeline:
    """Runs the segmentation thread and the recognition pool for a session.

    Frames flow recorder -> bounded frame queue -> VAD thread -> engine.
    When the engine applies backpressure the VAD thread blocks, the frame
    queue fills and the recorder holds further frames in its backlog until
    there is room again.
    """

    def __init__(
        self,
        recorder: Recorder,
        vad: VoiceActivityDetector,
        engine: TranscriptionEngine,
        frame_queue_size: int = 400,
        sample_rate: int = 16000,
        keep_audio: bool = True,
    ) -> None:
        self._recorder = recorder
        self._vad = vad
        self._engine = engine
        self._sample_rate = sample_rate
        self._keep_audio = keep_audio
        self._frame_queue: Queue[AudioFrame | None] = Queue(maxsize=max(1, frame_queue_size))
        self._thread: Optional[threading.Thread] = None
        self._input_closed = threading.Event()
        self._cancelled = threading.Event()
        self._chunks: list[np.ndarray] = []
        self._captured_samples = 0
        self._error: Optional[BaseException] = None

    @property
    def captured_ms(self) -> int:
        return int(self._captured_samples * 1000 / self._sample_rate)

    def start(self) -> None:
        self._engine.start()
        self._thread = threading.Thread(target=self._segment_loop, name="vad-segmenter", daemon=True)
        self._thread.start()
        try:
            self._recorder.start(self._frame_queue)
        except Exception:
            self.cancel()
            raise

    def finish(self) -> PipelineResult:
        """Stop capture, drain every frame and wait for all transcripts."""
        self._stop_recorder()
        self._input_closed.set()
        self._join()
        if self._error is not None:
            self._engine.cancel()
            raise RuntimeError(f"segmentation failed: {self._error}") from self._error
        if self._cancelled.is_set():
            return PipelineResult(cancelled=True)

        segments = self._engine.finish()
        if self._engine.cancelled:
            return PipelineResult(cancelled=True)
        samples = (
            np.concatenate(self._chunks).astype(np.float32, copy=False)
            if self._chunks
            else np.zeros(0, dtype=np.float32)
        )
        result = PipelineResult(
            segments=segments,
            samples=samples,
            sample_rate=self._sample_rate,
            duration_ms=self.captured_ms,
            utterance_count=self._engine.submitted,
            failures=self._engine.failures,
            overruns=self._recorder.overruns,
            discarded_utterances=self._vad.discarded,
        )
        logger.info(
            "session audio %d ms, %d utterances, %d failed, %d overruns",
            result.duration_ms,
            result.utterance_count,
            result.failures,
            result.overruns,
        )
        return result

    def cancel(self) -> None:
        self._cancelled.set()
        self._engine.cancel()
        self._stop_recorder(drain=False)
        self._input_closed.set()
        self._join()
        self._chunks = []

    def _stop_recorder(self, drain: bool = True) -> None:
        try:
            self._recorder.stop(drain=drain)
        except Exception:
            logger.warning("stopping recorder failed", exc_info=True)

    def _join(self) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def _segment_loop(self) -> None:
        try:
            while not self._cancelled.is_set():
                try:
                    frame = self._frame_queue.get(timeout=0.1)
                except Empty:
                    if self._input_closed.is_set():
                        break
                    continue
                if frame is None:
                    break
                self._captured_samples += len(frame.samples)
                if self._keep_audio:
                    self._chunks.append(frame.samples)
                for utterance in self._vad.process(frame):
                    if not self._engine.submit(utterance):
                        return
            if self._cancelled.is_set():
                return
            for utterance in self._vad.flush():
                if not self._engine.submit(utterance):
                    return
        except Exception as exc:
            logger.exception("segmentation loop failed")
            self._error = exc
