"""JSON-based key-value store and pipeline configuration."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from interfaces import KeyValueStore

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "dictation"

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional editor polishing speech recognition output. "
    "Fix recognition mistakes, add suitable punctuation, make sentences read "
    "naturally, keep the original meaning without adding or removing key "
    "information, and reply with the polished text only."
)

PLACEHOLDER_TEXT = "[unrecognized]"


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_DATA_DIR / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    def get_hotkey(self) -> str:
        return str(self.get("hotkey", "Key.alt_r"))

    def set_hotkey(self, hotkey: str) -> None:
        self.set("hotkey", hotkey)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}

    def _write_all(self, data: dict) -> None:
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)


class MemoryStore:
    """In-process KeyValueStore, used by tests and one-shot CLI commands."""

    def __init__(self, initial: Optional[dict] = None) -> None:
        self._data = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value


@dataclass
class DictationConfig:
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # capture
    sample_rate: int = 16000
    frame_ms: int = 30
    frame_queue_size: int = 400
    frame_put_timeout_s: float = 1.0

    # segmentation
    hangover_ms: int = 3000
    tail_pad_ms: int = 300
    pre_roll_ms: int = 150
    enter_frames: int = 3
    min_utterance_ms: int = 250
    max_utterance_ms: int = 30000
    webrtc_aggressiveness: int = 2
    silero_threshold: float = 0.5

    # recognition
    asr_workers: int = 2
    asr_threads: int = 2
    utterance_queue_size: int = 8
    inference_failure_policy: str = "placeholder"
    min_recording_ms: int = 500

    # polishing
    polish_enabled: bool = True
    polish_timeout_s: float = 8.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    llm_daily_token_limit: int = 5000

    # history
    save_audio: bool = True

    @property
    def models_dir(self) -> Path:
        return self.data_dir / "models"

    @property
    def history_dir(self) -> Path:
        return self.data_dir / "history"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def frame_samples(self) -> int:
        return self.sample_rate * self.frame_ms // 1000

    @classmethod
    def from_store(cls, store: KeyValueStore) -> "DictationConfig":
        """Build a config from the ``dictation`` key of the settings store.

        Unknown keys are ignored; ``DICTATION_DATA_DIR`` overrides the data
        directory.
        """
        raw = store.get("dictation", {}) or {}
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in raw.items() if key in known}
        if "data_dir" in values:
            values["data_dir"] = Path(values["data_dir"]).expanduser()
        env_dir = os.getenv("DICTATION_DATA_DIR")
        if env_dir:
            values["data_dir"] = Path(env_dir).expanduser()
        config = cls(**values)
        if config.inference_failure_policy not in ("placeholder", "abort"):
            config.inference_failure_policy = "placeholder"
        config.asr_workers = max(1, int(config.asr_workers))
        config.utterance_queue_size = max(1, int(config.utterance_queue_size))
        return config
