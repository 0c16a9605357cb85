"""Fire-and-forget event broadcast to external collaborators."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Callable, Optional, Union

from errors import Severity
from logger import get_logger
from models import AudioState, TranscribingStage

logger = get_logger("events")

AUDIO_STATE_CHANGED = "audio-state-changed"
TRANSCRIBING_STAGE = "on-transcribing-stage"
DOWNLOAD_PROGRESS = "offline-model-download-progress"
NOTIFICATION = "notification"
TRANSCRIPT_READY = "transcript-ready"


@dataclass(frozen=True)
class AudioStateChanged:
    state: AudioState
    name: str = AUDIO_STATE_CHANGED

    def to_payload(self) -> dict:
        return self.state.to_payload()


@dataclass(frozen=True)
class TranscribingStageChanged:
    stage: TranscribingStage
    name: str = TRANSCRIBING_STAGE

    def to_payload(self) -> dict:
        return {"stage": self.stage.value}


@dataclass(frozen=True)
class DownloadProgress:
    model_id: str
    received_bytes: int
    total_bytes: Optional[int]
    name: str = DOWNLOAD_PROGRESS

    def to_payload(self) -> dict:
        return {
            "modelId": self.model_id,
            "receivedBytes": self.received_bytes,
            "totalBytes": self.total_bytes,
        }


@dataclass(frozen=True)
class Notification:
    message: str
    severity: Severity
    code: str = ""
    name: str = NOTIFICATION

    def to_payload(self) -> dict:
        return {"message": self.message, "severity": self.severity.value, "code": self.code}


@dataclass(frozen=True)
class TranscriptReady:
    text: str
    entry_id: Optional[str]
    ui_triggered: bool
    name: str = TRANSCRIPT_READY

    def to_payload(self) -> dict:
        return {"text": self.text, "entryId": self.entry_id, "uiTriggered": self.ui_triggered}


Event = Union[AudioStateChanged, TranscribingStageChanged, DownloadProgress, Notification, TranscriptReady]
Listener = Callable[[Event], None]


class EventBus:
    """Observer list fed through a dispatcher thread.

    ``emit`` never blocks on listeners: events are queued and delivered in
    order by a daemon thread. A failing listener is logged and skipped.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._queue: Queue[Event | None] = Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: Event) -> None:
        if self._closed:
            return
        self._ensure_thread()
        self._queue.put_nowait(event)

    def notify(self, message: str, severity: Severity, code: str = "") -> None:
        self.emit(Notification(message=message, severity=severity, code=code))

    def drain(self, timeout_s: float = 2.0) -> bool:
        """Wait until every queued event has been delivered."""
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout_s)

    def close(self) -> None:
        self._closed = True
        if self._thread is not None:
            self._queue.put_nowait(None)
            self._thread.join(timeout=1.0)

    def _ensure_thread(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._dispatch, name="event-bus", daemon=True)
                self._thread.start()

    def _dispatch(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=0.5)
            except Empty:
                if self._closed:
                    return
                continue
            try:
                if event is None:
                    return
                with self._lock:
                    listeners = list(self._listeners)
                for listener in listeners:
                    try:
                        listener(event)
                    except Exception:
                        logger.exception("event listener failed for %s", event.name)
            finally:
                self._queue.task_done()
