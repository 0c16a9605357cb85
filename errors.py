"""Shared error codes, user-facing messages and exception types."""

from __future__ import annotations

from enum import Enum
from typing import Optional

PERMISSION_DENIED = "PERMISSION_DENIED"
DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
MODEL_NOT_READY = "MODEL_NOT_READY"
UNKNOWN_MODEL = "UNKNOWN_MODEL"
MODEL_BUSY = "MODEL_BUSY"
DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
DOWNLOAD_IN_PROGRESS = "DOWNLOAD_IN_PROGRESS"
INFERENCE_ERROR = "INFERENCE_ERROR"
LLM_AUTH_FAILED = "LLM_AUTH_FAILED"
LLM_TIMEOUT = "LLM_TIMEOUT"
LLM_ERROR = "LLM_ERROR"
LLM_QUOTA_EXCEEDED = "LLM_QUOTA_EXCEEDED"
HISTORY_IO_ERROR = "HISTORY_IO_ERROR"
INVALID_STATE = "INVALID_STATE"
NO_SPEECH = "NO_SPEECH"
RECORDING_TOO_SHORT = "RECORDING_TOO_SHORT"
PUNCTUATION_FAILED = "PUNCTUATION_FAILED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission is required.",
    DEVICE_UNAVAILABLE: "No usable microphone was found.",
    MODEL_NOT_READY: "Speech model is not downloaded yet.",
    UNKNOWN_MODEL: "Unknown model.",
    MODEL_BUSY: "Model cannot be switched while dictating.",
    DOWNLOAD_FAILED: "Model download failed, please retry.",
    DOWNLOAD_IN_PROGRESS: "Another model download is already running.",
    INFERENCE_ERROR: "Part of the recording could not be recognized.",
    LLM_AUTH_FAILED: "API key is invalid.",
    LLM_TIMEOUT: "Text polishing timed out, original text kept.",
    LLM_ERROR: "Text polishing failed, original text kept.",
    LLM_QUOTA_EXCEEDED: "Free polishing quota used up, configure an API key.",
    HISTORY_IO_ERROR: "History could not be saved.",
    INVALID_STATE: "Dictation is already running.",
    NO_SPEECH: "No speech detected, check the microphone and keep speaking while recording.",
    RECORDING_TOO_SHORT: "Recording too short, please retry.",
    PUNCTUATION_FAILED: "Punctuation unavailable, raw text kept.",
}


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class DictationError(Exception):
    code = INFERENCE_ERROR
    severity = Severity.ERROR

    def __init__(self, detail: str = "", *, code: Optional[str] = None) -> None:
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(detail or self.user_message)

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES.get(self.code, self.detail)


class PermissionDenied(DictationError):
    code = PERMISSION_DENIED


class DeviceUnavailable(PermissionDenied):
    code = DEVICE_UNAVAILABLE


class ModelNotReady(DictationError):
    code = MODEL_NOT_READY


class UnknownModel(DictationError):
    code = UNKNOWN_MODEL


class ModelBusy(DictationError):
    code = MODEL_BUSY


class DownloadFailed(DictationError):
    code = DOWNLOAD_FAILED


class DownloadInProgress(DictationError):
    code = DOWNLOAD_IN_PROGRESS
    severity = Severity.WARNING


class InferenceError(DictationError):
    code = INFERENCE_ERROR
    severity = Severity.WARNING


class LlmError(DictationError):
    code = LLM_ERROR
    severity = Severity.WARNING


class LlmAuthError(LlmError):
    code = LLM_AUTH_FAILED


class LlmTimeout(LlmError):
    code = LLM_TIMEOUT


class LlmQuotaExceeded(LlmError):
    code = LLM_QUOTA_EXCEEDED


class HistoryIoError(DictationError):
    code = HISTORY_IO_ERROR


class InvalidState(DictationError):
    code = INVALID_STATE
    severity = Severity.WARNING
