from __future__ import annotations

from errors import Severity
from events import AudioStateChanged, EventBus, Notification, TranscriptReady
from models import AudioState, DictationMode, TranscribingStage


def test_events_are_delivered_in_order() -> None:
    bus = EventBus()
    received: list = []
    bus.subscribe(received.append)
    bus.emit(AudioStateChanged(AudioState.dictating(DictationMode.NORMAL)))
    bus.emit(AudioStateChanged(AudioState.transcribing(TranscribingStage.ASR)))
    bus.notify("No speech detected", Severity.INFO, "NO_SPEECH")
    assert bus.drain()
    bus.close()

    assert [e.name for e in received] == [
        "audio-state-changed",
        "audio-state-changed",
        "notification",
    ]
    assert received[1].to_payload() == {"type": "transcribing", "stage": "asr"}
    assert received[2].to_payload() == {"message": "No speech detected", "severity": "info", "code": "NO_SPEECH"}


def test_failing_listener_does_not_block_others() -> None:
    bus = EventBus()
    received: list = []

    def broken(event: object) -> None:
        raise RuntimeError("listener bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit(TranscriptReady(text="你好", entry_id="e1", ui_triggered=False))
    assert bus.drain()
    bus.close()
    assert len(received) == 1
    assert received[0].to_payload() == {"text": "你好", "entryId": "e1", "uiTriggered": False}


def test_unsubscribe_and_close() -> None:
    bus = EventBus()
    received: list = []
    unsubscribe = bus.subscribe(received.append)
    bus.notify("one", Severity.WARNING)
    assert bus.drain()
    unsubscribe()
    bus.notify("two", Severity.WARNING)
    assert bus.drain()
    bus.close()
    bus.notify("three", Severity.WARNING)
    assert [e.message for e in received if isinstance(e, Notification)] == ["one"]
