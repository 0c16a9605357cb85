"""Tests for TranscriptionEngine and the ordering buffer."""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from errors import InferenceError
from models import RecognitionResult, TranscriptSegment, Utterance
from transcription import TranscriptAssembler, TranscriptionEngine


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _utterance(sequence: int, marker: float = 0.0) -> Utterance:
    samples = np.full(1600, marker, dtype=np.float32)
    return Utterance(samples=samples, start_ms=sequence * 1000, end_ms=sequence * 1000 + 100, sequence=sequence)


class DelayedRecognizer:
    """Returns ``u<marker>`` after a per-utterance delay encoded in the samples."""

    def __init__(self, delays: dict[int, float], fail: set[int] | None = None) -> None:
        self._delays = delays
        self._fail = fail or set()
        self.calls: list[int] = []
        self._lock = threading.Lock()

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> RecognitionResult:
        marker = int(samples[0])
        with self._lock:
            self.calls.append(marker)
        time.sleep(self._delays.get(marker, 0.0))
        if marker in self._fail:
            raise InferenceError(f"decode failed for {marker}")
        return RecognitionResult(text=f"u{marker}", confidence=0.9)


class BlockingRecognizer:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Event()

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> RecognitionResult:
        self.started.set()
        self.release.wait(timeout=5.0)
        return RecognitionResult(text="late")


# ---------------------------------------------------------------
# TranscriptAssembler
# ---------------------------------------------------------------

def test_assembler_releases_in_sequence_order() -> None:
    assembler = TranscriptAssembler()
    assert assembler.add(TranscriptSegment(2, "c")) == []
    assert assembler.add(TranscriptSegment(1, "b")) == []
    released = assembler.add(TranscriptSegment(0, "a"))
    assert [s.text for s in released] == ["a", "b", "c"]
    assert assembler.next_sequence == 3
    assert assembler.pending_count == 0


def test_assembler_rejects_duplicates() -> None:
    assembler = TranscriptAssembler()
    assembler.add(TranscriptSegment(0, "a"))
    with pytest.raises(ValueError):
        assembler.add(TranscriptSegment(0, "again"))


# ---------------------------------------------------------------
# Engine
# ---------------------------------------------------------------

def test_out_of_order_completion_is_reassembled() -> None:
    # utterance 0 finishes last
    recognizer = DelayedRecognizer({0: 0.3, 1: 0.0, 2: 0.05})
    engine = TranscriptionEngine(recognizer, workers=3, queue_size=4)
    engine.start()
    for seq in range(3):
        assert engine.submit(_utterance(seq, marker=seq))
    segments = engine.finish()
    assert [s.sequence for s in segments] == [0, 1, 2]
    assert [s.text for s in segments] == ["u0", "u1", "u2"]
    assert engine.failures == 0


def test_failed_utterance_becomes_error_segment() -> None:
    recognizer = DelayedRecognizer({}, fail={1})
    engine = TranscriptionEngine(recognizer, workers=2)
    engine.start()
    for seq in range(3):
        engine.submit(_utterance(seq, marker=seq))
    segments = engine.finish()
    assert [s.failed for s in segments] == [False, True, False]
    assert "decode failed" in segments[1].error
    assert engine.failures == 1


def test_submit_out_of_order_is_rejected() -> None:
    engine = TranscriptionEngine(DelayedRecognizer({}), workers=1)
    engine.start()
    with pytest.raises(ValueError):
        engine.submit(_utterance(1))
    assert engine.finish() == []


def test_finish_without_utterances_returns_empty() -> None:
    engine = TranscriptionEngine(DelayedRecognizer({}), workers=2)
    engine.start()
    assert engine.finish() == []


def test_submit_blocks_when_queue_full() -> None:
    recognizer = BlockingRecognizer()
    engine = TranscriptionEngine(recognizer, workers=1, queue_size=1)
    engine.start()
    engine.submit(_utterance(0))
    assert recognizer.started.wait(timeout=2.0)
    engine.submit(_utterance(1))  # fills the queue

    submitted = threading.Event()

    def _third() -> None:
        engine.submit(_utterance(2))
        submitted.set()

    threading.Thread(target=_third, daemon=True).start()
    assert not submitted.wait(timeout=0.3)

    recognizer.release.set()
    assert submitted.wait(timeout=2.0)
    segments = engine.finish()
    assert [s.sequence for s in segments] == [0, 1, 2]


def test_cancel_discards_pending_work() -> None:
    recognizer = BlockingRecognizer()
    engine = TranscriptionEngine(recognizer, workers=1, queue_size=4)
    engine.start()
    engine.submit(_utterance(0))
    engine.submit(_utterance(1))
    assert recognizer.started.wait(timeout=2.0)

    engine.cancel()
    recognizer.release.set()
    assert engine.finish() == []
    assert engine.cancelled
    assert not engine.submit(_utterance(2))
