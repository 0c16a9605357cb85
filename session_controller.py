"""State-machine based dictation session orchestration."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional

from config import DictationConfig
from errors import (
    ERROR_MESSAGES,
    INFERENCE_ERROR,
    NO_SPEECH,
    RECORDING_TOO_SHORT,
    DictationError,
    HistoryIoError,
    InferenceError,
    InvalidState,
    ModelNotReady,
    Severity,
)
from events import AudioStateChanged, EventBus, TranscribingStageChanged, TranscriptReady
from history import HistoryStore
from interfaces import Recorder
from logger import get_logger
from model_manager import ModelLease, ModelManager, asr_variant_id
from model_registry import ModelDescriptor
from models import (
    AudioState,
    AudioStateType,
    DictationMode,
    HistoryKind,
    ModelKind,
    NewHistoryEntry,
    PolishResult,
    PolishStatus,
    SessionOutcome,
    TranscribingStage,
)
from pipeline import DictationPipeline, PipelineResult
from polisher import TextPolisher
from punctuation import PunctuationRestorer
from recorder import SoundDeviceRecorder
from transcription import TranscriptionEngine
from vad import VoiceActivityDetector

logger = get_logger("session")

RecorderFactory = Callable[[DictationConfig], Recorder]


def default_recorder_factory(config: DictationConfig) -> Recorder:
    return SoundDeviceRecorder(
        sample_rate=config.sample_rate,
        frame_ms=config.frame_ms,
        put_timeout_s=config.frame_put_timeout_s,
    )


@dataclass
class _Session:
    id: int
    mode: DictationMode
    pipeline: DictationPipeline
    cancel_event: threading.Event
    lease: ModelLease
    asr_model: ModelDescriptor


class DictationStateMachine:
    def __init__(
        self,
        model_manager: ModelManager,
        history: HistoryStore,
        event_bus: EventBus,
        config: DictationConfig,
        polisher: Optional[TextPolisher] = None,
        recorder_factory: RecorderFactory = default_recorder_factory,
    ) -> None:
        self._manager = model_manager
        self._history = history
        self._events = event_bus
        self._config = config
        self._polisher = polisher
        self._recorder_factory = recorder_factory

        self._lock = threading.RLock()
        self._state = AudioState.idle()
        self._session_id = 0
        self._session: Optional[_Session] = None

    @property
    def state(self) -> AudioState:
        return self._state

    def start(self, mode: DictationMode = DictationMode.NORMAL) -> int:
        with self._lock:
            if self._state.type != AudioStateType.IDLE:
                raise InvalidState(f"cannot start while {self._state.type.value}")

            # activation is refused from here until the session settles
            lease = self._manager.lease(tuple(ModelKind))
            cancel_event = threading.Event()
            try:
                asr_model = self._manager.ensure_ready(ModelKind.ASR)
                self._manager.ensure_ready(ModelKind.VAD)
                try:
                    recognizer = self._manager.handle(ModelKind.ASR)
                    vad_model = self._manager.handle(ModelKind.VAD)
                except DictationError:
                    raise
                except Exception as exc:
                    raise ModelNotReady(f"failed to load models: {exc}") from exc
                pipeline = self._build_pipeline(recognizer, vad_model, cancel_event)
                pipeline.start()
            except Exception:
                lease.release()
                raise

            self._session_id += 1
            self._session = _Session(
                id=self._session_id,
                mode=mode,
                pipeline=pipeline,
                cancel_event=cancel_event,
                lease=lease,
                asr_model=asr_model,
            )
            self._transition(AudioState.dictating(mode))
            logger.info("session %d started (%s)", self._session_id, mode.value)
            return self._session_id

    def stop(self, ui_triggered: bool = False) -> SessionOutcome:
        """Finish the current recording; blocks until the session is settled."""
        with self._lock:
            session = self._session
            if session is None or self._state.type != AudioStateType.DICTATING:
                raise InvalidState("not dictating")
            self._transition(AudioState.transcribing(TranscribingStage.ASR))

        try:
            result = session.pipeline.finish()
            if result.cancelled or session.cancel_event.is_set():
                return SessionOutcome(session_id=session.id, cancelled=True)
            return self._finalize(session, result, ui_triggered)
        except Exception as exc:
            logger.exception("session %d failed while transcribing", session.id)
            self._end(session, exc if isinstance(exc, DictationError) else InferenceError(str(exc)))
            raise
        finally:
            session.lease.release()

    def cancel(self) -> None:
        """Drop the current session from any state; no-op when idle."""
        with self._lock:
            session = self._session
            if session is None:
                return
            self._session = None
            session.cancel_event.set()
            self._transition(AudioState.idle())
        session.pipeline.cancel()
        session.lease.release()
        logger.info("session %d cancelled", session.id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _build_pipeline(
        self,
        recognizer: object,
        vad_model: object,
        cancel_event: threading.Event,
    ) -> DictationPipeline:
        config = self._config
        vad = VoiceActivityDetector(
            vad_model.create_classifier(),
            frame_ms=config.frame_ms,
            hangover_ms=config.hangover_ms,
            tail_pad_ms=config.tail_pad_ms,
            pre_roll_ms=config.pre_roll_ms,
            enter_frames=config.enter_frames,
            min_utterance_ms=config.min_utterance_ms,
            max_utterance_ms=config.max_utterance_ms,
        )
        engine = TranscriptionEngine(
            recognizer,
            workers=config.asr_workers,
            queue_size=config.utterance_queue_size,
            cancel_event=cancel_event,
        )
        return DictationPipeline(
            self._recorder_factory(config),
            vad,
            engine,
            frame_queue_size=config.frame_queue_size,
            sample_rate=config.sample_rate,
            keep_audio=config.save_audio,
        )

    def _finalize(self, session: _Session, result: PipelineResult, ui_triggered: bool) -> SessionOutcome:
        outcome = SessionOutcome(
            session_id=session.id,
            duration_seconds=result.duration_ms / 1000.0,
            utterance_count=result.utterance_count,
            failed_utterances=result.failures,
        )

        if result.duration_ms < self._config.min_recording_ms:
            logger.info("session %d too short (%d ms)", session.id, result.duration_ms)
            outcome.warnings.append(ERROR_MESSAGES[RECORDING_TOO_SHORT])
            self._end(session)
            self._events.notify(ERROR_MESSAGES[RECORDING_TOO_SHORT], Severity.ERROR, RECORDING_TOO_SHORT)
            return outcome

        if result.overruns:
            outcome.warnings.append(f"{result.overruns} audio frames were lost while recording.")
        if result.failures:
            outcome.warnings.append(
                f"{ERROR_MESSAGES[INFERENCE_ERROR]} ({result.failures} of {result.utterance_count})"
            )
            if self._config.inference_failure_policy == "abort":
                self._end(session)
                self._events.notify(ERROR_MESSAGES[INFERENCE_ERROR], Severity.ERROR, INFERENCE_ERROR)
                return outcome

        if not any(s.text.strip() for s in result.segments if not s.failed) and not result.failures:
            logger.info("session %d: no speech detected", session.id)
            outcome.no_speech = True
            self._end(session)
            self._events.notify(ERROR_MESSAGES[NO_SPEECH], Severity.INFO, NO_SPEECH)
            return outcome

        restored = PunctuationRestorer(self._punctuation_model()).restore(result.segments)
        outcome.raw_text = restored.raw_text
        outcome.warnings.extend(restored.warnings)

        polished = PolishResult(text=restored.text, status=PolishStatus.SKIPPED)
        if self._polisher is not None and self._polisher.is_configured():
            with self._lock:
                if self._session is not session:
                    return SessionOutcome(session_id=session.id, cancelled=True)
                self._transition(AudioState.transcribing(TranscribingStage.POLISHING))
            polished = self._polisher.polish(restored.text, session.cancel_event)
            if polished.error:
                outcome.warnings.append(polished.error)

        with self._lock:
            if self._session is not session or session.cancel_event.is_set():
                return SessionOutcome(session_id=session.id, cancelled=True)
            try:
                entry = self._commit(session, result, restored.raw_text, polished)
            except HistoryIoError as exc:
                self._end(session, exc)
                raise
            self._end(session)

        outcome.text = entry.text
        outcome.entry = entry
        outcome.polish_status = polished.status
        self._events.emit(TranscriptReady(text=entry.text, entry_id=entry.id, ui_triggered=ui_triggered))
        for warning in outcome.warnings:
            self._events.notify(warning, Severity.WARNING)
        logger.info("session %d committed as %s", session.id, entry.id)
        return outcome

    def _commit(self, session: _Session, result: PipelineResult, raw_text: str, polished: PolishResult):
        audio_path = None
        if self._config.save_audio and len(result.samples):
            audio_path = self._history.save_audio(result.samples, result.sample_rate)
        variant = asr_variant_id(session.asr_model.id)
        duration_seconds = int(round(result.duration_ms / 1000.0))
        new_entry = NewHistoryEntry(
            text=polished.text,
            kind=HistoryKind.for_mode(session.mode),
            raw_text=raw_text,
            duration_seconds=duration_seconds,
            audio_file_path=audio_path,
            asr_model=session.asr_model.id,
            asr_variant_id=variant,
            llm_model=polished.llm_model,
            llm_variant_id=polished.llm_variant_id,
            llm_total_tokens=polished.total_tokens if polished.status == PolishStatus.SUCCESS else None,
            polish_status=polished.status,
            polish_error=polished.error,
        )
        try:
            entry = self._history.add(new_entry)
        except HistoryIoError:
            if audio_path is not None:
                self._history.discard_audio(audio_path)
            raise
        self._manager.record_asr_usage(variant, float(duration_seconds))
        return entry

    def _punctuation_model(self) -> Optional[object]:
        try:
            return self._manager.handle(ModelKind.PUNCTUATION)
        except Exception as exc:
            logger.warning("punctuation model unavailable: %s", exc)
            return None

    def _end(self, session: _Session, error: Optional[DictationError] = None) -> None:
        with self._lock:
            if self._session is not session:
                return
            self._session = None
            self._transition(AudioState.idle())
        if error is not None:
            self._events.notify(error.user_message, error.severity, error.code)

    def _transition(self, to_state: AudioState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        self._events.emit(AudioStateChanged(state=to_state))
        if to_state.stage is not None:
            self._events.emit(TranscribingStageChanged(stage=to_state.stage))
        logger.debug("state %s -> %s", from_state.to_payload(), to_state.to_payload())
