"""End-to-end tests of DictationStateMachine over the real pipeline with fakes."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from queue import Full, Queue
from typing import Callable, Iterator, Optional

import numpy as np
import pytest

from config import PLACEHOLDER_TEXT, DictationConfig, MemoryStore
from errors import (
    ERROR_MESSAGES,
    INFERENCE_ERROR,
    LLM_TIMEOUT,
    NO_SPEECH,
    RECORDING_TOO_SHORT,
    HistoryIoError,
    InferenceError,
    InvalidState,
    ModelBusy,
    ModelNotReady,
)
from events import AudioStateChanged, EventBus, Notification, TranscribingStageChanged, TranscriptReady
from history import HistoryStore
from model_manager import ModelManager
from model_registry import LlmProvider, ModelDescriptor, ModelRegistry
from models import (
    AudioFrame,
    AudioStateType,
    DictationMode,
    HistoryKind,
    ModelKind,
    PolishStatus,
    RecognitionResult,
    TranscribingStage,
)
from polisher import TextPolisher
from session_controller import DictationStateMachine


# ---------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------

FRAME_SAMPLES = 480
SPEECH_1 = 0.3
SPEECH_2 = 0.6


class FakeRecorder:
    """Pushes a scripted list of frame amplitudes as soon as capture starts."""

    def __init__(self, script: list[float]) -> None:
        self.script = script
        self._queue: Optional[Queue] = None
        self.started = False
        self.stopped = False

    def start(self, frame_queue: Queue) -> None:
        self._queue = frame_queue
        self.started = True
        for index, amplitude in enumerate(self.script):
            frame_queue.put(
                AudioFrame(
                    samples=np.full(FRAME_SAMPLES, amplitude, dtype=np.float32),
                    sample_rate=16000,
                    sequence=index,
                    timestamp_ms=index * 30,
                ),
                timeout=2.0,
            )

    def stop(self, drain: bool = True) -> None:
        if self.stopped or self._queue is None:
            return
        self.stopped = True
        try:
            self._queue.put_nowait(None)
        except Full:
            pass

    @property
    def overruns(self) -> int:
        return 0


class AmplitudeClassifier:
    def is_speech(self, samples: np.ndarray) -> bool:
        return bool(samples[0] > 0.05)

    def reset(self) -> None:
        pass


class FakeVadModel:
    def create_classifier(self) -> AmplitudeClassifier:
        return AmplitudeClassifier()


class AmplitudeRecognizer:
    """Maps an utterance's peak amplitude to a transcript."""

    def __init__(self, texts: dict[float, str], fail: tuple[float, ...] = ()) -> None:
        self.texts = texts
        self.fail = fail
        self.release = threading.Event()
        self.release.set()
        self.started = threading.Event()
        self.calls = 0

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> RecognitionResult:
        self.started.set()
        self.calls += 1
        self.release.wait(timeout=5.0)
        peak = round(float(np.max(np.abs(samples))), 1)
        if peak in self.fail:
            raise InferenceError(f"decoder crashed on {peak}")
        return RecognitionResult(text=self.texts.get(peak, ""))


class FakePunctuation:
    def add_punctuation(self, text: str) -> str:
        return text + "。"


class FakeBackend:
    def __init__(self, reply: str = "今天天气很好。", delay_s: float = 0.0) -> None:
        self.reply = reply
        self.delay_s = delay_s

    def complete(self, system_prompt: str, text: str, timeout_s: float, max_tokens: int | None = None) -> tuple[str, int]:
        time.sleep(self.delay_s)
        return self.reply, 25


CATALOG = (
    ModelDescriptor(id="fake-asr", kind=ModelKind.ASR, title="Fake ASR", engine="paraformer"),
    ModelDescriptor(
        id="big-asr",
        kind=ModelKind.ASR,
        title="Big ASR",
        offline=True,
        url="https://models.test/big.tar.bz2",
        archive=True,
        files=("model.int8.onnx", "tokens.txt"),
    ),
    ModelDescriptor(id="fake-vad", kind=ModelKind.VAD, title="Fake VAD"),
    ModelDescriptor(id="other-vad", kind=ModelKind.VAD, title="Other VAD"),
    ModelDescriptor(id="fake-punc", kind=ModelKind.PUNCTUATION, title="Fake punctuation"),
    ModelDescriptor(
        id="deepseek",
        kind=ModelKind.LLM,
        title="DeepSeek",
        providers=(
            LlmProvider(
                id="deepseek",
                name="DeepSeek",
                model="deepseek-chat",
                api_base_url="https://llm.test/v1/chat/completions",
            ),
        ),
    ),
)


def _ms(duration_ms: int, amplitude: float) -> list[float]:
    return [amplitude] * (duration_ms // 30)


TWO_UTTERANCES = _ms(300, 0.0) + _ms(900, SPEECH_1) + _ms(600, 0.0) + _ms(900, SPEECH_2) + _ms(600, 0.0)


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        script: list[float] = TWO_UTTERANCES,
        recognizer: Optional[AmplitudeRecognizer] = None,
        backend: Optional[FakeBackend] = None,
        store: Optional[MemoryStore] = None,
        **config_overrides,
    ) -> None:
        params = dict(
            data_dir=tmp_path,
            hangover_ms=300,
            tail_pad_ms=90,
            pre_roll_ms=60,
            enter_frames=2,
            min_utterance_ms=90,
            asr_workers=2,
            polish_timeout_s=2.0,
        )
        params.update(config_overrides)
        self.config = DictationConfig(**params)
        self.recognizer = recognizer or AmplitudeRecognizer({SPEECH_1: "今天", SPEECH_2: "天气不错"})
        self.events: list = []
        self.bus = EventBus()
        self.bus.subscribe(self.events.append)
        self.manager = ModelManager(
            self.config.models_dir,
            store or MemoryStore(),
            registry=ModelRegistry(CATALOG),
            loaders={
                ModelKind.ASR: lambda descriptor, model_dir: self.recognizer,
                ModelKind.VAD: lambda descriptor, model_dir: FakeVadModel(),
                ModelKind.PUNCTUATION: lambda descriptor, model_dir: FakePunctuation(),
            },
            event_bus=self.bus,
            credential_probe=lambda provider, key: None,
        )
        self.history = HistoryStore(self.config.history_dir)
        self.polisher = None
        if backend is not None:
            self.manager.update_credential("deepseek", "deepseek", "sk-test")
            self.polisher = TextPolisher(
                self.manager,
                "polish",
                timeout_s=self.config.polish_timeout_s,
                backend_factory=lambda provider, key: backend,
            )
        self.recorders: list[FakeRecorder] = []
        self.script = script
        self.machine = DictationStateMachine(
            self.manager,
            self.history,
            self.bus,
            self.config,
            polisher=self.polisher,
            recorder_factory=self._recorder,
        )

    def _recorder(self, config: DictationConfig) -> FakeRecorder:
        recorder = FakeRecorder(self.script)
        self.recorders.append(recorder)
        return recorder

    def drained(self, kind: type) -> list:
        self.bus.drain()
        return [e for e in self.events if isinstance(e, kind)]

    def notifications(self) -> list[Notification]:
        return self.drained(Notification)

    def close(self) -> None:
        self.machine.cancel()
        self.history.close()
        self.bus.close()


@pytest.fixture
def harness_factory(tmp_path: Path) -> Iterator[Callable[..., Harness]]:
    created: list[Harness] = []

    def make(**kwargs) -> Harness:
        harness = Harness(tmp_path, **kwargs)
        created.append(harness)
        return harness

    yield make
    for harness in created:
        harness.close()


# ---------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------

def test_dictation_is_punctuated_across_utterances(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    session_id = h.machine.start()
    assert h.machine.state.type == AudioStateType.DICTATING

    outcome = h.machine.stop(ui_triggered=True)

    assert outcome.session_id == session_id
    assert outcome.text == "今天天气不错。"
    assert outcome.raw_text == "今天天气不错"
    assert outcome.utterance_count == 2
    assert outcome.polish_status == PolishStatus.SKIPPED
    assert h.machine.state.type == AudioStateType.IDLE

    entries = h.history.list()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.text == "今天天气不错。"
    assert entry.kind == HistoryKind.DICTATION
    assert entry.asr_variant_id == "fake-asr::local"
    assert entry.duration_seconds == 3
    assert entry.total_words == 6
    assert (h.config.history_dir / entry.audio_file_path).is_file()

    usage = h.manager.get_models_store().asr_entry("fake-asr::local")
    assert usage.total_requests == 1

    ready = h.drained(TranscriptReady)
    assert [(e.text, e.entry_id, e.ui_triggered) for e in ready] == [("今天天气不错。", entry.id, True)]
    states = [e.state.type for e in h.drained(AudioStateChanged)]
    assert states == [AudioStateType.DICTATING, AudioStateType.TRANSCRIBING, AudioStateType.IDLE]


def test_diary_mode_is_saved_as_diary(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    h.machine.start(DictationMode.DIARY)
    outcome = h.machine.stop()
    assert outcome.entry.kind == HistoryKind.DIARY


def test_sessions_get_increasing_ids(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    first = h.machine.start()
    h.machine.stop()
    second = h.machine.start()
    h.machine.stop()
    assert second == first + 1
    assert len(h.history.list()) == 2


# ---------------------------------------------------------------
# Empty and short recordings
# ---------------------------------------------------------------

def test_silence_produces_no_entry(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory(script=_ms(3000, 0.0))
    h.machine.start()
    outcome = h.machine.stop()

    assert outcome.no_speech
    assert outcome.entry is None
    assert h.history.list() == []
    assert h.machine.state.type == AudioStateType.IDLE
    codes = [n.code for n in h.notifications()]
    assert codes == [NO_SPEECH]
    assert h.drained(TranscriptReady) == []


def test_too_short_recording_is_rejected(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory(script=_ms(300, SPEECH_1))
    h.machine.start()
    outcome = h.machine.stop()

    assert outcome.entry is None
    assert h.history.list() == []
    notes = h.notifications()
    assert [n.code for n in notes] == [RECORDING_TOO_SHORT]
    assert notes[0].message == ERROR_MESSAGES[RECORDING_TOO_SHORT]
    assert h.machine.state.type == AudioStateType.IDLE


# ---------------------------------------------------------------
# Recognition failures
# ---------------------------------------------------------------

def test_failed_utterance_keeps_placeholder(harness_factory: Callable[..., Harness]) -> None:
    recognizer = AmplitudeRecognizer({SPEECH_1: "今天"}, fail=(SPEECH_2,))
    h = harness_factory(recognizer=recognizer)
    h.machine.start()
    outcome = h.machine.stop()

    assert outcome.failed_utterances == 1
    assert outcome.text == f"今天。{PLACEHOLDER_TEXT}"
    assert outcome.entry is not None
    assert any(ERROR_MESSAGES[INFERENCE_ERROR] in w for w in outcome.warnings)


def test_abort_policy_discards_session(harness_factory: Callable[..., Harness]) -> None:
    recognizer = AmplitudeRecognizer({SPEECH_1: "今天"}, fail=(SPEECH_2,))
    h = harness_factory(recognizer=recognizer, inference_failure_policy="abort")
    h.machine.start()
    outcome = h.machine.stop()

    assert outcome.entry is None
    assert h.history.list() == []
    assert INFERENCE_ERROR in [n.code for n in h.notifications()]
    assert h.machine.state.type == AudioStateType.IDLE


# ---------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------

def test_cancel_while_dictating_discards_everything(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    h.machine.start()
    h.machine.cancel()

    assert h.machine.state.type == AudioStateType.IDLE
    assert h.recorders[0].stopped
    with pytest.raises(InvalidState):
        h.machine.stop()
    assert h.history.list() == []
    # lease released, models can be switched again
    h.manager.activate(ModelKind.VAD, "other-vad")


def test_cancel_when_idle_is_noop(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    h.machine.cancel()
    assert h.machine.state.type == AudioStateType.IDLE
    assert h.drained(AudioStateChanged) == []


def test_cancel_while_transcribing(harness_factory: Callable[..., Harness]) -> None:
    recognizer = AmplitudeRecognizer({SPEECH_1: "今天", SPEECH_2: "天气不错"})
    recognizer.release.clear()
    h = harness_factory(recognizer=recognizer)
    h.machine.start()

    outcomes: list = []
    stopper = threading.Thread(target=lambda: outcomes.append(h.machine.stop()))
    stopper.start()
    assert recognizer.started.wait(timeout=2.0)
    deadline = time.monotonic() + 2.0
    while h.machine.state.type != AudioStateType.TRANSCRIBING and time.monotonic() < deadline:
        time.sleep(0.01)

    h.machine.cancel()
    recognizer.release.set()
    stopper.join(timeout=5.0)

    assert outcomes and outcomes[0].cancelled
    assert h.history.list() == []
    assert h.machine.state.type == AudioStateType.IDLE
    assert h.drained(TranscriptReady) == []


# ---------------------------------------------------------------
# Polishing
# ---------------------------------------------------------------

def test_polished_text_is_committed(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory(backend=FakeBackend())
    h.machine.start()
    outcome = h.machine.stop()

    assert outcome.polish_status == PolishStatus.SUCCESS
    assert outcome.text == "今天天气很好。"
    assert outcome.entry.raw_text == "今天天气不错"
    assert outcome.entry.llm_total_tokens == 25
    assert outcome.entry.llm_variant_id == "deepseek::deepseek"
    stages = [e.stage for e in h.drained(TranscribingStageChanged)]
    assert stages == [TranscribingStage.ASR, TranscribingStage.POLISHING]


def test_polish_timeout_keeps_punctuated_text(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory(backend=FakeBackend(delay_s=1.0), polish_timeout_s=0.2)
    h.machine.start()
    outcome = h.machine.stop()

    assert outcome.polish_status == PolishStatus.FAILED
    assert outcome.text == "今天天气不错。"
    assert outcome.entry.polish_status == PolishStatus.FAILED
    assert outcome.entry.llm_total_tokens is None
    assert ERROR_MESSAGES[LLM_TIMEOUT] in [n.message for n in h.notifications()]
    usage = h.manager.get_models_store().llm_entry("deepseek::deepseek")
    assert usage.total_requests == 0


# ---------------------------------------------------------------
# Guards
# ---------------------------------------------------------------

def test_start_twice_is_invalid(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    h.machine.start()
    with pytest.raises(InvalidState):
        h.machine.start()
    assert len(h.recorders) == 1


def test_stop_when_idle_is_invalid(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    with pytest.raises(InvalidState):
        h.machine.stop()


def test_model_switch_refused_during_session(harness_factory: Callable[..., Harness]) -> None:
    h = harness_factory()
    h.machine.start()
    with pytest.raises(ModelBusy):
        h.manager.activate(ModelKind.VAD, "other-vad")
    h.machine.stop()
    h.manager.activate(ModelKind.VAD, "other-vad")
    assert h.manager.active_model(ModelKind.VAD).id == "other-vad"


def test_start_requires_ready_asr_model(harness_factory: Callable[..., Harness]) -> None:
    store = MemoryStore({"models": {"active_asr_model": "big-asr"}})
    h = harness_factory(store=store)
    with pytest.raises(ModelNotReady):
        h.machine.start()
    assert h.machine.state.type == AudioStateType.IDLE
    assert h.recorders == []
    # no lease left behind
    h.manager.activate(ModelKind.VAD, "other-vad")


def test_activation_is_refused_while_start_loads_models(
    harness_factory: Callable[..., Harness], monkeypatch: pytest.MonkeyPatch
) -> None:
    h = harness_factory()
    refused: list[ModelBusy] = []
    load = h.manager.handle

    def handle_with_switch(kind: ModelKind) -> object:
        if kind == ModelKind.ASR:
            try:
                h.manager.activate(ModelKind.VAD, "other-vad")
            except ModelBusy as exc:
                refused.append(exc)
        return load(kind)

    monkeypatch.setattr(h.manager, "handle", handle_with_switch)
    h.machine.start()
    h.machine.stop()

    assert len(refused) == 1
    assert h.manager.active_model(ModelKind.VAD).id == "fake-vad"


# ---------------------------------------------------------------
# History write failures
# ---------------------------------------------------------------

def test_failed_history_write_removes_saved_audio(
    harness_factory: Callable[..., Harness], monkeypatch: pytest.MonkeyPatch
) -> None:
    h = harness_factory()

    def fail_add(new_entry: object) -> None:
        raise HistoryIoError("database is locked")

    monkeypatch.setattr(h.history, "add", fail_add)
    h.machine.start()
    with pytest.raises(HistoryIoError):
        h.machine.stop()

    assert list(h.history.audio_dir.glob("*.wav")) == []
    assert h.history.list() == []
    assert h.machine.state.type == AudioStateType.IDLE
    usage = h.manager.get_models_store().asr_entry("fake-asr::local")
    assert usage is None or usage.total_requests == 0


# ---------------------------------------------------------------
# Segmentation through the machine
# ---------------------------------------------------------------

def test_two_seconds_of_speech_is_one_entry(harness_factory: Callable[..., Harness]) -> None:
    recognizer = AmplitudeRecognizer({SPEECH_1: "今天天气不错"})
    h = harness_factory(script=_ms(2000, SPEECH_1), recognizer=recognizer)
    h.machine.start()
    outcome = h.machine.stop()

    assert recognizer.calls == 1
    assert outcome.entry.text == "今天天气不错。"
    assert outcome.entry.duration_seconds == 2


def test_pause_shorter_than_hangover_is_one_utterance(harness_factory: Callable[..., Harness]) -> None:
    recognizer = AmplitudeRecognizer({SPEECH_1: "今天天气不错我们出去走走"})
    script = _ms(300, 0.0) + _ms(900, SPEECH_1) + _ms(1500, 0.0) + _ms(900, SPEECH_1) + _ms(300, 0.0)
    h = harness_factory(script=script, recognizer=recognizer, hangover_ms=3000)
    h.machine.start()
    outcome = h.machine.stop()

    assert recognizer.calls == 1
    assert outcome.utterance_count == 1
    assert outcome.text == "今天天气不错我们出去走走。"
