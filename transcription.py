"""Utterance transcription worker pool with in-order reassembly."""

from __future__ import annotations

import threading
from queue import Empty, Full, Queue
from typing import Optional

from interfaces import SpeechRecognizer
from logger import get_logger
from models import TranscriptSegment, Utterance

logger = get_logger("transcription")

_POLL_S = 0.1


class TranscriptAssembler:
    """Ordering buffer: accepts segments in any order, releases them by sequence."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[int, TranscriptSegment] = {}
        self._ordered: list[TranscriptSegment] = []
        self._next = 0

    @property
    def next_sequence(self) -> int:
        return self._next

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add(self, segment: TranscriptSegment) -> list[TranscriptSegment]:
        """Buffer ``segment``; return the segments it made releasable."""
        with self._lock:
            if segment.sequence < self._next or segment.sequence in self._pending:
                raise ValueError(f"duplicate segment {segment.sequence}")
            self._pending[segment.sequence] = segment
            released = []
            while self._next in self._pending:
                item = self._pending.pop(self._next)
                self._ordered.append(item)
                released.append(item)
                self._next += 1
            return released

    def ordered(self) -> list[TranscriptSegment]:
        with self._lock:
            return list(self._ordered)


class TranscriptionEngine:
    def __init__(
        self,
        recognizer: SpeechRecognizer,
        workers: int = 2,
        queue_size: int = 8,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._recognizer = recognizer
        self._worker_count = max(1, workers)
        self._queue: Queue[Utterance | None] = Queue(maxsize=max(1, queue_size))
        self._cancel = cancel_event or threading.Event()
        self._assembler = TranscriptAssembler()
        self._threads: list[threading.Thread] = []
        self._submitted = 0
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> None:
        if self._threads:
            return
        for index in range(self._worker_count):
            thread = threading.Thread(target=self._worker, name=f"asr-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def submit(self, utterance: Utterance) -> bool:
        """Queue an utterance, blocking while the queue is full.

        Returns False only when the session was cancelled meanwhile.
        """
        if utterance.sequence != self._submitted:
            raise ValueError(
                f"utterance {utterance.sequence} submitted out of order, expected {self._submitted}"
            )
        if not self._put(utterance):
            return False
        self._submitted += 1
        return True

    def finish(self) -> list[TranscriptSegment]:
        """Wait for every queued utterance and return segments in order."""
        for _ in self._threads:
            if not self._put(None):
                break
        for thread in self._threads:
            while thread.is_alive() and not self._cancel.is_set():
                thread.join(timeout=_POLL_S)
        if self._cancel.is_set():
            return []
        segments = self._assembler.ordered()
        if len(segments) != self._submitted:
            raise RuntimeError(
                f"transcript incomplete: {len(segments)} of {self._submitted} utterances"
            )
        return segments

    def cancel(self) -> None:
        self._cancel.set()
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                break

    def _put(self, item: Utterance | None) -> bool:
        while not self._cancel.is_set():
            try:
                self._queue.put(item, timeout=_POLL_S)
                return True
            except Full:
                continue
        return False

    def _worker(self) -> None:
        while True:
            try:
                utterance = self._queue.get(timeout=_POLL_S)
            except Empty:
                if self._cancel.is_set():
                    return
                continue
            if utterance is None or self._cancel.is_set():
                return
            segment = self._transcribe(utterance)
            if self._cancel.is_set():
                return
            self._assembler.add(segment)

    def _transcribe(self, utterance: Utterance) -> TranscriptSegment:
        try:
            result = self._recognizer.transcribe(utterance.samples, utterance.sample_rate)
        except Exception as exc:
            with self._lock:
                self._failures += 1
            logger.error("utterance %d failed: %s", utterance.sequence, exc)
            return TranscriptSegment(sequence=utterance.sequence, text="", error=str(exc))
        logger.debug("utterance %d -> %r", utterance.sequence, result.text)
        return TranscriptSegment(
            sequence=utterance.sequence,
            text=result.text,
            confidence=result.confidence,
        )
