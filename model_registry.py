"""Static catalog of the models the dictation core knows about."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from models import ModelKind

PARAFORMER_MODEL_ID = "sherpa-onnx-paraformer-zh-small-2024-03-09"
SENSEVOICE_MODEL_ID = "sherpa-onnx-sense-voice-zh-en-ja-ko-yue-int8-2025-09-09"
CT_PUNCT_MODEL_ID = "sherpa-onnx-punct-ct-transformer-zh-en-vocab272727-2024-04-12"
SILERO_VAD_MODEL_ID = "silero-vad"
WEBRTC_VAD_MODEL_ID = "webrtc-vad"

_SHERPA_RELEASES = "https://github.com/k2-fsa/sherpa-onnx/releases/download"


@dataclass(frozen=True)
class LlmProvider:
    id: str
    name: str
    model: str
    api_base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    api_key_url: Optional[str] = None
    backend: str = "openai"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    kind: ModelKind
    title: str
    size: str = ""
    offline: bool = False
    url: Optional[str] = None
    archive: bool = False
    files: tuple[str, ...] = ()
    checksum: Optional[str] = None
    engine: str = ""
    providers: tuple[LlmProvider, ...] = field(default_factory=tuple)

    def provider(self, provider_id: str) -> Optional[LlmProvider]:
        return next((p for p in self.providers if p.id == provider_id), None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "size": self.size,
            "offline": self.offline,
            "url": self.url,
            "files": list(self.files),
            "providers": [
                {"id": p.id, "name": p.name, "model": p.model, "apiKeyUrl": p.api_key_url}
                for p in self.providers
            ],
        }


MODEL_CATALOG: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id=PARAFORMER_MODEL_ID,
        kind=ModelKind.ASR,
        title="Paraformer Chinese (small, offline)",
        size="83.4 MB",
        offline=True,
        url=f"{_SHERPA_RELEASES}/asr-models/{PARAFORMER_MODEL_ID}.tar.bz2",
        archive=True,
        files=("model.int8.onnx", "tokens.txt"),
        engine="paraformer",
    ),
    ModelDescriptor(
        id=SENSEVOICE_MODEL_ID,
        kind=ModelKind.ASR,
        title="SenseVoice zh/en/ja/ko/yue (offline)",
        size="244 MB",
        offline=True,
        url=f"{_SHERPA_RELEASES}/asr-models/{SENSEVOICE_MODEL_ID}.tar.bz2",
        archive=True,
        files=("model.int8.onnx", "tokens.txt"),
        engine="sense_voice",
    ),
    ModelDescriptor(
        id=CT_PUNCT_MODEL_ID,
        kind=ModelKind.PUNCTUATION,
        title="CT-Transformer punctuation zh/en",
        size="281 MB",
        offline=True,
        url=f"{_SHERPA_RELEASES}/punctuation-models/{CT_PUNCT_MODEL_ID}.tar.bz2",
        archive=True,
        files=("model.onnx",),
        engine="ct_transformer",
    ),
    ModelDescriptor(
        id=SILERO_VAD_MODEL_ID,
        kind=ModelKind.VAD,
        title="Silero VAD",
        size="629 KB",
        offline=True,
        url=f"{_SHERPA_RELEASES}/asr-models/silero_vad.onnx",
        archive=False,
        files=("silero_vad.onnx",),
        engine="silero",
    ),
    ModelDescriptor(
        id=WEBRTC_VAD_MODEL_ID,
        kind=ModelKind.VAD,
        title="WebRTC VAD (built in)",
        offline=False,
        engine="webrtc",
    ),
    ModelDescriptor(
        id="deepseek",
        kind=ModelKind.LLM,
        title="DeepSeek",
        providers=(
            LlmProvider(
                id="deepseek",
                name="DeepSeek",
                model="deepseek-chat",
                api_base_url="https://api.deepseek.com/v1/chat/completions",
                api_key_env="DEEPSEEK_API_KEY",
                api_key_url="https://platform.deepseek.com/api_keys",
            ),
            LlmProvider(
                id="modelscope",
                name="ModelScope",
                model="deepseek-ai/DeepSeek-V3.2-Exp",
                api_base_url="https://api-inference.modelscope.cn/v1/chat/completions",
                api_key_env="MODELSCOPE_ACCESS_TOKEN",
                api_key_url="https://modelscope.cn/my/myaccesstoken",
            ),
        ),
    ),
    ModelDescriptor(
        id="qwen",
        kind=ModelKind.LLM,
        title="Qwen",
        providers=(
            LlmProvider(
                id="modelscope",
                name="ModelScope",
                model="Qwen/Qwen3-32B",
                api_base_url="https://api-inference.modelscope.cn/v1/chat/completions",
                api_key_env="MODELSCOPE_ACCESS_TOKEN",
                api_key_url="https://modelscope.cn/my/myaccesstoken",
            ),
            LlmProvider(
                id="dashscope",
                name="DashScope",
                model="qwen-plus",
                api_key_env="DASHSCOPE_API_KEY",
                api_key_url="https://dashscope.console.aliyun.com/apiKey",
                backend="dashscope",
            ),
        ),
    ),
)

DEFAULT_MODELS = {
    ModelKind.ASR: PARAFORMER_MODEL_ID,
    ModelKind.VAD: SILERO_VAD_MODEL_ID,
    ModelKind.PUNCTUATION: CT_PUNCT_MODEL_ID,
    ModelKind.LLM: "deepseek",
}


class ModelRegistry:
    def __init__(self, catalog: tuple[ModelDescriptor, ...] = MODEL_CATALOG) -> None:
        self._catalog = catalog
        self._by_id = {descriptor.id: descriptor for descriptor in catalog}

    def all(self) -> tuple[ModelDescriptor, ...]:
        return self._catalog

    def of_kind(self, kind: ModelKind) -> list[ModelDescriptor]:
        return [d for d in self._catalog if d.kind == kind]

    def offline(self) -> list[ModelDescriptor]:
        return [d for d in self._catalog if d.offline]

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._by_id.get(model_id)

    def default_for(self, kind: ModelKind) -> Optional[str]:
        default = DEFAULT_MODELS.get(kind)
        if default in self._by_id:
            return default
        candidates = self.of_kind(kind)
        return candidates[0].id if candidates else None
