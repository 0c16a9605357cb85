"""Microphone capture: down-mix, resample and frame into a bounded queue."""

from __future__ import annotations

import threading
import time
from collections import deque
from queue import Full, Queue
from typing import Any, Optional

import numpy as np

from errors import DeviceUnavailable
from logger import get_logger
from models import AudioFrame

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = get_logger("recorder")


def downmix(block: np.ndarray) -> np.ndarray:
    """Collapse an (n, channels) block to mono float32."""
    data = np.asarray(block, dtype=np.float32)
    if data.ndim == 2:
        data = data.mean(axis=1) if data.shape[1] > 1 else data[:, 0]
    return data.astype(np.float32, copy=False)


class StreamResampler:
    """Linear-interpolation resampler that keeps phase across blocks."""

    def __init__(self, source_rate: int, target_rate: int) -> None:
        self.source_rate = source_rate
        self.target_rate = target_rate
        self._step = source_rate / float(target_rate)
        self._pending = np.zeros(0, dtype=np.float32)
        self._position = 0.0

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self.source_rate == self.target_rate:
            return samples.astype(np.float32, copy=False)
        buffer = np.concatenate([self._pending, samples.astype(np.float32, copy=False)])
        if len(buffer) < 2:
            self._pending = buffer
            return np.zeros(0, dtype=np.float32)
        last = len(buffer) - 1
        count = int(np.floor((last - self._position) / self._step)) + 1
        if count <= 0:
            self._pending = buffer
            return np.zeros(0, dtype=np.float32)
        positions = self._position + np.arange(count) * self._step
        out = np.interp(positions, np.arange(len(buffer)), buffer).astype(np.float32)
        next_position = self._position + count * self._step
        keep_from = min(int(np.floor(next_position)), len(buffer))
        self._pending = buffer[keep_from:]
        self._position = next_position - keep_from
        return out


class FrameAssembler:
    """Cuts a sample stream into fixed-size, sequence-numbered frames."""

    def __init__(self, frame_samples: int, sample_rate: int) -> None:
        self.frame_samples = frame_samples
        self.sample_rate = sample_rate
        self._buffer = np.zeros(0, dtype=np.float32)
        self._sequence = 0

    def push(self, samples: np.ndarray) -> list[AudioFrame]:
        self._buffer = np.concatenate([self._buffer, samples])
        frames: list[AudioFrame] = []
        while len(self._buffer) >= self.frame_samples:
            chunk = self._buffer[: self.frame_samples]
            self._buffer = self._buffer[self.frame_samples :]
            frames.append(
                AudioFrame(
                    samples=chunk.copy(),
                    sample_rate=self.sample_rate,
                    sequence=self._sequence,
                    timestamp_ms=self._sequence * self.frame_samples * 1000 // self.sample_rate,
                )
            )
            self._sequence += 1
        return frames


class SoundDeviceRecorder:
    def __init__(
        self,
        sample_rate: int = 16000,
        frame_ms: int = 30,
        put_timeout_s: float = 1.0,
        device: Optional[Any] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.frame_ms = frame_ms
        self.put_timeout_s = put_timeout_s
        self.device = device
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._overruns = 0
        self._frame_queue: Queue[AudioFrame | None] | None = None
        # frames waiting for room in the frame queue; the callback never blocks
        self._backlog: deque[AudioFrame] = deque()
        self._resampler: Optional[StreamResampler] = None
        self._assembler: Optional[FrameAssembler] = None

    @property
    def overruns(self) -> int:
        return self._overruns

    def start(self, frame_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise DeviceUnavailable("sounddevice is not installed")
            try:
                info = sd.query_devices(self.device, kind="input")
            except Exception as exc:
                raise DeviceUnavailable(f"no input device: {exc}") from exc
            source_rate = int(info.get("default_samplerate") or self.sample_rate)
            channels = max(1, min(2, int(info.get("max_input_channels") or 1)))

            self._frame_queue = frame_queue
            self._overruns = 0
            self._backlog.clear()
            self._resampler = StreamResampler(source_rate, self.sample_rate)
            self._assembler = FrameAssembler(self.sample_rate * self.frame_ms // 1000, self.sample_rate)
            try:
                self._stream = sd.InputStream(
                    device=self.device,
                    samplerate=source_rate,
                    channels=channels,
                    dtype="float32",
                    blocksize=int(source_rate * self.frame_ms / 1000),
                    callback=self._on_audio,
                )
                self._stream.start()
            except Exception as exc:
                self._stream = None
                raise DeviceUnavailable(f"cannot open input stream: {exc}") from exc
            self._running = True
            logger.info("capture started: %s Hz x%d -> %s Hz mono", source_rate, channels, self.sample_rate)

    def stop(self, drain: bool = True) -> None:
        """Close the stream, hand over waiting frames, then the end marker.

        With ``drain=False`` (cancel) waiting frames are discarded.
        """
        with self._lock:
            if not self._running:
                self._emit_sentinel_if_needed()
                return
            self._running = False
            if self._stream is not None:
                try:
                    self._stream.stop()
                    self._stream.close()
                except Exception:
                    logger.warning("closing input stream failed", exc_info=True)
                self._stream = None
            if drain:
                self._drain_backlog()
            else:
                self._backlog.clear()
            self._emit_sentinel_if_needed()
            logger.info("capture stopped, overruns=%d", self._overruns)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._frame_queue is None:
            return
        if self._resampler is None or self._assembler is None:
            return
        if status:
            if getattr(status, "input_overflow", False):
                self._overruns += 1
                logger.warning("input overflow, driver dropped audio")
            else:
                logger.debug("input status: %s", status)
        mono = downmix(indata)
        self._backlog.extend(self._assembler.push(self._resampler.process(mono)))
        self._flush_backlog()

    def _flush_backlog(self) -> None:
        while self._backlog:
            try:
                self._frame_queue.put_nowait(self._backlog[0])
            except Full:
                logger.debug("frame queue full, %d frames waiting", len(self._backlog))
                return
            self._backlog.popleft()

    def _drain_backlog(self) -> None:
        if self._frame_queue is None:
            return
        while self._backlog:
            try:
                self._frame_queue.put(self._backlog[0], timeout=self.put_timeout_s)
            except Full:
                self._overruns += len(self._backlog)
                logger.error("frame queue stalled, %d frames lost", len(self._backlog))
                self._backlog.clear()
                return
            self._backlog.popleft()

    def _emit_sentinel_if_needed(self) -> None:
        if self._frame_queue is None:
            return
        deadline = time.monotonic() + self.put_timeout_s
        while True:
            try:
                self._frame_queue.put_nowait(None)
                return
            except Full:
                if time.monotonic() >= deadline:
                    logger.warning("frame queue full, end-of-stream marker dropped")
                    return
                time.sleep(0.01)
