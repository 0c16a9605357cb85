"""Command surface of the dictation core.

``DictationService`` wires the model manager, history store, polisher and
state machine together and exposes the commands a shell (hotkey adapter,
CLI, UI bridge) calls. Events go out through ``service.events``.
"""

from __future__ import annotations

import base64
from functools import partial
from typing import Optional, Union

from config import DictationConfig
from errors import DictationError
from events import EventBus
from history import HistoryStore
from interfaces import KeyValueStore
from logger import get_logger
from model_manager import Loader, ModelManager, ModelsStore, OfflineModelsStatus
from models import (
    DictationMode,
    HistoryEntry,
    HistoryListFilter,
    HistoryStats,
    ModelKind,
    PolishStatus,
    SessionOutcome,
)
from polisher import BackendFactory, TextPolisher, make_backend, probe_credential
from punctuation import make_punctuation_loader
from recognizer import make_asr_loader
from session_controller import DictationStateMachine, RecorderFactory, default_recorder_factory
from vad import make_vad_loader

logger = get_logger("service")


def default_loaders(config: DictationConfig) -> dict[ModelKind, Loader]:
    return {
        ModelKind.ASR: make_asr_loader(config.asr_threads, config.sample_rate),
        ModelKind.VAD: make_vad_loader(
            config.sample_rate, config.silero_threshold, config.webrtc_aggressiveness
        ),
        ModelKind.PUNCTUATION: make_punctuation_loader(),
    }


class DictationService:
    def __init__(
        self,
        config: DictationConfig,
        store: KeyValueStore,
        event_bus: Optional[EventBus] = None,
        loaders: Optional[dict[ModelKind, Loader]] = None,
        recorder_factory: RecorderFactory = default_recorder_factory,
        backend_factory: BackendFactory = make_backend,
        http=None,
    ) -> None:
        self.config = config
        self.events = event_bus or EventBus()
        self.models = ModelManager(
            config.models_dir,
            store,
            loaders=loaders if loaders is not None else default_loaders(config),
            event_bus=self.events,
            credential_probe=partial(probe_credential, backend_factory=backend_factory),
            http=http,
            daily_token_limit=config.llm_daily_token_limit,
        )
        self.history = HistoryStore(config.history_dir)
        self.polisher = TextPolisher(
            self.models,
            config.system_prompt,
            timeout_s=config.polish_timeout_s,
            enabled=config.polish_enabled,
            backend_factory=backend_factory,
        )
        self.machine = DictationStateMachine(
            self.models,
            self.history,
            self.events,
            config,
            polisher=self.polisher,
            recorder_factory=recorder_factory,
        )

    @classmethod
    def from_store(cls, store: KeyValueStore, **kwargs) -> "DictationService":
        return cls(DictationConfig.from_store(store), store, **kwargs)

    def close(self) -> None:
        self.machine.cancel()
        self.history.close()
        self.events.close()

    # ------------------------------------------------------------------
    # Dictation
    # ------------------------------------------------------------------

    def start_dictating(self, mode: Union[DictationMode, str] = DictationMode.NORMAL) -> int:
        try:
            return self.machine.start(DictationMode(mode))
        except DictationError as exc:
            logger.warning("start refused: %s", exc)
            self.events.notify(exc.user_message, exc.severity, exc.code)
            raise

    def stop_dictating(self, ui_triggered: bool = False) -> SessionOutcome:
        return self.machine.stop(ui_triggered=ui_triggered)

    def cancel_dictating(self) -> None:
        self.machine.cancel()

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def list_supported_models(self) -> list[dict]:
        return [descriptor.to_dict() for descriptor in self.models.list_models()]

    def get_models_store(self) -> ModelsStore:
        return self.models.get_models_store()

    def get_offline_models_status(self) -> OfflineModelsStatus:
        return self.models.get_offline_status()

    def download_offline_models(self, model_id: str) -> OfflineModelsStatus:
        return self.models.download(model_id)

    def set_active_asr_model(self, model_id: str) -> ModelsStore:
        return self.models.activate(ModelKind.ASR, model_id)

    def set_active_text_model(self, model_id: str) -> ModelsStore:
        return self.models.activate(ModelKind.LLM, model_id)

    def set_active_vad_model(self, model_id: str) -> ModelsStore:
        return self.models.activate(ModelKind.VAD, model_id)

    def set_active_punctuation_model(self, model_id: str) -> ModelsStore:
        return self.models.activate(ModelKind.PUNCTUATION, model_id)

    def test_llm_api_key(self, model_id: str, provider_id: str, api_key: str) -> bool:
        return self.models.test_credential(model_id, provider_id, api_key)

    def update_text_model_credentials(
        self, model_id: str, provider_id: str, api_key: Optional[str]
    ) -> ModelsStore:
        return self.models.update_credential(model_id, provider_id, api_key)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def list_history_entries(self, query: Optional[HistoryListFilter] = None) -> list[HistoryEntry]:
        return self.history.list(query)

    def get_history_stats(self) -> HistoryStats:
        return self.history.stats()

    def delete_history_entry(self, entry_id: str) -> bool:
        removal = self.history.delete(entry_id)
        if removal is None:
            return False
        entry = removal.entry
        if entry.llm_variant_id and entry.polish_status == PolishStatus.SUCCESS:
            self.models.revert_llm_usage(entry.llm_variant_id, entry.llm_total_tokens or 0)
        if entry.asr_variant_id:
            self.models.revert_asr_usage(entry.asr_variant_id, float(entry.duration_seconds))
        return True

    def clear_history_entries(self) -> int:
        removed = self.history.clear()
        self.models.reset_usage_stats()
        return removed

    def load_history_audio(self, path: str) -> str:
        return base64.b64encode(self.history.load_audio(path)).decode("ascii")
