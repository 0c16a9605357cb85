"""Offline model readiness, downloads, activation and usage accounting."""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import tarfile
import tempfile
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import requests

from errors import (
    DownloadFailed,
    DownloadInProgress,
    LlmQuotaExceeded,
    ModelBusy,
    ModelNotReady,
    UnknownModel,
)
from events import DownloadProgress, EventBus
from interfaces import KeyValueStore
from logger import get_logger
from model_registry import LlmProvider, ModelDescriptor, ModelRegistry
from models import ModelKind

logger = get_logger("model_manager")

MODELS_STORE_KEY = "models"
MANIFEST_NAME = ".verified.json"
DOWNLOAD_CHUNK = 256 * 1024

Loader = Callable[[ModelDescriptor, Optional[Path]], Any]
CredentialProbe = Callable[[LlmProvider, str], None]


def _from_dict(cls, raw: dict):
    known = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in raw.items() if key in known})


@dataclass
class LlmModelState:
    id: str
    text_model_id: str
    provider: str
    api_key: Optional[str] = None
    active: bool = False
    total_requests: int = 0
    total_token_usage: int = 0
    free_total_requests: int = 0
    free_total_token_usage: int = 0
    usage_date: Optional[str] = None

    def reset_daily_usage(self, today: str) -> None:
        if self.usage_date != today:
            self.usage_date = today
            self.free_total_requests = 0
            self.free_total_token_usage = 0


@dataclass
class AsrModelState:
    id: str
    model_id: str
    provider: str = "local"
    offline: bool = True
    active: bool = False
    total_requests: int = 0
    total_hours: float = 0.0


@dataclass
class ModelsStore:
    llm_models: list[LlmModelState] = field(default_factory=list)
    asr_models: list[AsrModelState] = field(default_factory=list)
    active_llm_model: Optional[str] = None
    active_asr_model: Optional[str] = None
    active_vad_model: Optional[str] = None
    active_punctuation_model: Optional[str] = None

    def active_id(self, kind: ModelKind) -> Optional[str]:
        return {
            ModelKind.ASR: self.active_asr_model,
            ModelKind.LLM: self.active_llm_model,
            ModelKind.VAD: self.active_vad_model,
            ModelKind.PUNCTUATION: self.active_punctuation_model,
        }[kind]

    def set_active_id(self, kind: ModelKind, model_id: str) -> None:
        if kind == ModelKind.ASR:
            self.active_asr_model = model_id
            for entry in self.asr_models:
                entry.active = entry.model_id == model_id
        elif kind == ModelKind.LLM:
            self.active_llm_model = model_id
        elif kind == ModelKind.VAD:
            self.active_vad_model = model_id
        else:
            self.active_punctuation_model = model_id

    def llm_entry(self, variant_id: str) -> Optional[LlmModelState]:
        return next((e for e in self.llm_models if e.id == variant_id), None)

    def asr_entry(self, variant_id: str) -> Optional[AsrModelState]:
        return next((e for e in self.asr_models if e.id == variant_id), None)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict) -> "ModelsStore":
        data = _from_dict(cls, raw or {})
        data.llm_models = [_from_dict(LlmModelState, e) for e in (raw or {}).get("llm_models", [])]
        data.asr_models = [_from_dict(AsrModelState, e) for e in (raw or {}).get("asr_models", [])]
        return data


@dataclass
class OfflineModelStatus:
    id: str
    title: str
    kind: ModelKind
    ready: bool
    missing_files: list[str]
    install_dir: str


@dataclass
class OfflineModelsStatus:
    ready: bool
    missing_files: list[str]
    install_dir: str
    models: list[OfflineModelStatus]

    def model(self, model_id: str) -> Optional[OfflineModelStatus]:
        return next((m for m in self.models if m.id == model_id), None)


@dataclass
class LlmSelection:
    descriptor: ModelDescriptor
    provider: LlmProvider
    variant_id: str
    api_key: str
    free_quota: bool


def llm_variant_id(model_id: str, provider_id: str) -> str:
    return f"{model_id}::{provider_id}"


def asr_variant_id(model_id: str) -> str:
    return f"{model_id}::local"


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _sanitize_key(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ModelLease:
    """Marks model kinds as in use by a live session."""

    def __init__(self, manager: "ModelManager", kinds: tuple[ModelKind, ...]) -> None:
        self._manager = manager
        self.kinds = kinds
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._manager._release(self.kinds)

    def __enter__(self) -> "ModelLease":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class ModelManager:
    def __init__(
        self,
        models_dir: Path,
        store: KeyValueStore,
        registry: Optional[ModelRegistry] = None,
        loaders: Optional[dict[ModelKind, Loader]] = None,
        event_bus: Optional[EventBus] = None,
        credential_probe: Optional[CredentialProbe] = None,
        http: Optional[requests.Session] = None,
        daily_token_limit: int = 5000,
    ) -> None:
        self.models_dir = models_dir
        self.registry = registry or ModelRegistry()
        self._store = store
        self._loaders = dict(loaders or {})
        self._event_bus = event_bus
        self._credential_probe = credential_probe
        self._http = http or requests.Session()
        self.daily_token_limit = daily_token_limit

        self._state_lock = threading.RLock()
        self._download_lock = threading.Lock()
        self._handle_lock = threading.Lock()
        self._leases: Counter[ModelKind] = Counter()
        self._handles: dict[tuple[ModelKind, str], Any] = {}
        self._hash_cache: dict[tuple[str, int, int], str] = {}
        self.models_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Catalog and persisted selection
    # ------------------------------------------------------------------

    def list_models(self) -> tuple[ModelDescriptor, ...]:
        return self.registry.all()

    def get_models_store(self) -> ModelsStore:
        return self._with_store(lambda data: None)

    def active_model(self, kind: ModelKind) -> Optional[ModelDescriptor]:
        model_id = self.get_models_store().active_id(kind)
        return self.registry.get(model_id) if model_id else None

    def activate(self, kind: ModelKind, model_id: str) -> ModelsStore:
        descriptor = self.registry.get(model_id)
        if descriptor is None or descriptor.kind != kind:
            raise UnknownModel(f"unknown {kind.value} model: {model_id}")
        with self._state_lock:
            if self._leases[kind] > 0:
                raise ModelBusy(f"{kind.value} model is in use by the current session")
            if descriptor.offline and not self.is_ready(model_id):
                raise ModelNotReady(f"{descriptor.title} is not downloaded")
            store = self._with_store(lambda data: data.set_active_id(kind, model_id))
        logger.info("activated %s model %s", kind.value, model_id)
        return store

    def lease(self, kinds: Iterable[ModelKind]) -> ModelLease:
        kinds = tuple(kinds)
        with self._state_lock:
            for kind in kinds:
                self._leases[kind] += 1
        return ModelLease(self, kinds)

    def _release(self, kinds: tuple[ModelKind, ...]) -> None:
        with self._state_lock:
            for kind in kinds:
                self._leases[kind] = max(0, self._leases[kind] - 1)

    def _with_store(self, mutator: Callable[[ModelsStore], None]) -> ModelsStore:
        with self._state_lock:
            data = ModelsStore.from_dict(self._store.get(MODELS_STORE_KEY, {}) or {})
            self._hydrate(data)
            mutator(data)
            self._hydrate(data)
            self._store.set(MODELS_STORE_KEY, data.to_dict())
            return data

    def _hydrate(self, data: ModelsStore) -> None:
        for descriptor in self.registry.of_kind(ModelKind.LLM):
            for provider in descriptor.providers:
                variant = llm_variant_id(descriptor.id, provider.id)
                if data.llm_entry(variant) is None:
                    data.llm_models.append(
                        LlmModelState(id=variant, text_model_id=descriptor.id, provider=provider.id)
                    )
            siblings = [e for e in data.llm_models if e.text_model_id == descriptor.id]
            actives = [e for e in siblings if e.active]
            for extra in actives[1:]:
                extra.active = False
            if not actives and siblings:
                siblings[0].active = True

        for descriptor in self.registry.of_kind(ModelKind.ASR):
            variant = asr_variant_id(descriptor.id)
            if data.asr_entry(variant) is None:
                data.asr_models.append(
                    AsrModelState(id=variant, model_id=descriptor.id, offline=descriptor.offline)
                )

        for kind in ModelKind:
            current = data.active_id(kind)
            descriptor = self.registry.get(current) if current else None
            if descriptor is None or descriptor.kind != kind:
                default = self.registry.default_for(kind)
                if default is not None:
                    data.set_active_id(kind, default)
        for entry in data.asr_models:
            entry.active = entry.model_id == data.active_asr_model

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def install_dir(self, descriptor: ModelDescriptor) -> Path:
        return self.models_dir / descriptor.kind.value / descriptor.id

    def model_status(self, descriptor: ModelDescriptor) -> OfflineModelStatus:
        model_dir = self.install_dir(descriptor)
        missing = [
            f"{descriptor.id}/{name}" for name in descriptor.files if not (model_dir / name).is_file()
        ]
        if not missing and not self._manifest_matches(descriptor, model_dir):
            missing = [f"{descriptor.id}/{MANIFEST_NAME} (unverified)"]
        return OfflineModelStatus(
            id=descriptor.id,
            title=descriptor.title,
            kind=descriptor.kind,
            ready=not missing,
            missing_files=missing,
            install_dir=str(model_dir),
        )

    def get_offline_status(self) -> OfflineModelsStatus:
        statuses = [self.model_status(d) for d in self.registry.offline()]
        missing = [name for status in statuses for name in status.missing_files]
        return OfflineModelsStatus(
            ready=not missing,
            missing_files=missing,
            install_dir=str(self.models_dir),
            models=statuses,
        )

    def is_ready(self, model_id: str) -> bool:
        descriptor = self.registry.get(model_id)
        if descriptor is None:
            return False
        if not descriptor.offline:
            return True
        return self.model_status(descriptor).ready

    def ensure_ready(self, kind: ModelKind) -> ModelDescriptor:
        descriptor = self.active_model(kind)
        if descriptor is None:
            raise ModelNotReady(f"no active {kind.value} model")
        if descriptor.offline:
            status = self.model_status(descriptor)
            if not status.ready:
                raise ModelNotReady(
                    f"{descriptor.title} is not ready, missing: {', '.join(status.missing_files)}"
                )
        return descriptor

    def _manifest_matches(self, descriptor: ModelDescriptor, model_dir: Path) -> bool:
        manifest_path = model_dir / MANIFEST_NAME
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        recorded = manifest.get("files", {})
        for name in descriptor.files:
            entry = recorded.get(name)
            path = model_dir / name
            if not entry:
                return False
            try:
                stat = path.stat()
            except OSError:
                return False
            if stat.st_size != entry.get("size"):
                return False
            if self._cached_sha256(path, stat) != entry.get("sha256"):
                return False
        return True

    def _cached_sha256(self, path: Path, stat: os.stat_result) -> str:
        key = (str(path), stat.st_size, stat.st_mtime_ns)
        digest = self._hash_cache.get(key)
        if digest is None:
            digest = sha256_file(path)
            self._hash_cache[key] = digest
        return digest

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download(self, model_id: str) -> OfflineModelsStatus:
        descriptor = self.registry.get(model_id)
        if descriptor is None or not descriptor.offline or not descriptor.url:
            raise UnknownModel(f"not a downloadable model: {model_id}")
        if not self._download_lock.acquire(blocking=False):
            raise DownloadInProgress(f"cannot download {model_id} while another download runs")
        try:
            logger.info("downloading %s from %s", descriptor.id, descriptor.url)
            self._download(descriptor)
            logger.info("model %s downloaded and verified", descriptor.id)
        except DownloadFailed as exc:
            logger.warning("download of %s failed: %s", descriptor.id, exc)
            raise
        finally:
            self._download_lock.release()
        return self.get_offline_status()

    def _download(self, descriptor: ModelDescriptor) -> None:
        work_dir = Path(tempfile.mkdtemp(prefix=".download-", dir=self.models_dir))
        try:
            payload = work_dir / ("payload.tar.bz2" if descriptor.archive else "payload.part")
            self._fetch(descriptor, payload)
            if descriptor.checksum:
                actual = sha256_file(payload)
                if actual != descriptor.checksum.lower():
                    raise DownloadFailed(f"checksum mismatch for {descriptor.id}")

            if descriptor.archive:
                extract_dir = work_dir / "extract"
                self._extract(payload, extract_dir)
                staging = self._find_model_dir(descriptor, extract_dir)
            else:
                staging = work_dir / "staging"
                staging.mkdir()
                os.replace(payload, staging / descriptor.files[0])

            missing = [name for name in descriptor.files if not (staging / name).is_file()]
            if missing:
                raise DownloadFailed(f"{descriptor.id} archive lacks {', '.join(missing)}")
            self._write_manifest(descriptor, staging)
            self._install(descriptor, staging, work_dir)
        except DownloadFailed:
            raise
        except (requests.RequestException, OSError, tarfile.TarError, EOFError) as exc:
            raise DownloadFailed(f"{descriptor.id}: {exc}") from exc
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        with self._handle_lock:
            for key in [k for k in self._handles if k[1] == descriptor.id]:
                del self._handles[key]

    def _fetch(self, descriptor: ModelDescriptor, destination: Path) -> None:
        with self._http.get(descriptor.url, stream=True, timeout=(10, 60)) as response:
            response.raise_for_status()
            length = response.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else None
            received = 0
            self._emit_progress(descriptor.id, received, total)
            with destination.open("wb") as fh:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                    if not chunk:
                        continue
                    fh.write(chunk)
                    received += len(chunk)
                    self._emit_progress(descriptor.id, received, total)
        if total is not None and received != total:
            raise DownloadFailed(f"truncated download: {received} of {total} bytes")

    def _extract(self, archive_path: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "r:*") as archive:
            archive.extractall(destination, filter="data")

    def _find_model_dir(self, descriptor: ModelDescriptor, root: Path) -> Path:
        first = descriptor.files[0]
        for path in sorted(root.rglob(first)):
            if all((path.parent / name).is_file() for name in descriptor.files):
                return path.parent
        raise DownloadFailed(f"archive for {descriptor.id} does not contain {first}")

    def _write_manifest(self, descriptor: ModelDescriptor, model_dir: Path) -> None:
        files = {}
        for name in descriptor.files:
            path = model_dir / name
            files[name] = {"size": path.stat().st_size, "sha256": sha256_file(path)}
        manifest = {
            "model_id": descriptor.id,
            "verified_at": datetime.now(timezone.utc).isoformat(),
            "files": files,
        }
        (model_dir / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2), encoding="utf-8")

    def _install(self, descriptor: ModelDescriptor, staging: Path, work_dir: Path) -> None:
        target = self.install_dir(descriptor)
        target.parent.mkdir(parents=True, exist_ok=True)
        previous = None
        if target.exists():
            previous = work_dir / "previous"
            os.replace(target, previous)
        try:
            os.replace(staging, target)
        except OSError:
            if previous is not None:
                os.replace(previous, target)
            raise

    def _emit_progress(self, model_id: str, received: int, total: Optional[int]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(DownloadProgress(model_id=model_id, received_bytes=received, total_bytes=total))

    # ------------------------------------------------------------------
    # Loaded model handles
    # ------------------------------------------------------------------

    def handle(self, kind: ModelKind) -> Any:
        """Return the loaded active model for ``kind``, loading it once."""
        descriptor = self.ensure_ready(kind)
        loader = self._loaders.get(kind)
        if loader is None:
            raise RuntimeError(f"no loader registered for {kind.value} models")
        key = (kind, descriptor.id)
        with self._handle_lock:
            if key not in self._handles:
                model_dir = self.install_dir(descriptor) if descriptor.offline else None
                self._handles[key] = loader(descriptor, model_dir)
            return self._handles[key]

    # ------------------------------------------------------------------
    # Text model credentials
    # ------------------------------------------------------------------

    def _llm_target(self, model_id: str, provider_id: str) -> tuple[ModelDescriptor, LlmProvider]:
        descriptor = self.registry.get(model_id)
        if descriptor is None or descriptor.kind != ModelKind.LLM:
            raise UnknownModel(f"unknown text model: {model_id}")
        provider = descriptor.provider(provider_id)
        if provider is None:
            raise UnknownModel(f"unknown provider {provider_id} for {model_id}")
        return descriptor, provider

    def test_credential(self, model_id: str, provider_id: str, api_key: str) -> bool:
        """Probe the provider live; raises LlmAuthError / LlmError on failure."""
        _, provider = self._llm_target(model_id, provider_id)
        key = _sanitize_key(api_key)
        if key is None:
            return False
        if self._credential_probe is None:
            raise RuntimeError("no credential probe configured")
        self._credential_probe(provider, key)
        return True

    def update_credential(self, model_id: str, provider_id: str, api_key: Optional[str]) -> ModelsStore:
        """Persist ``api_key`` only after a successful probe; empty clears it."""
        descriptor, provider = self._llm_target(model_id, provider_id)
        key = _sanitize_key(api_key)
        if key is not None:
            self.test_credential(model_id, provider_id, key)
        variant = llm_variant_id(descriptor.id, provider.id)

        def mutate(data: ModelsStore) -> None:
            for entry in data.llm_models:
                if entry.text_model_id == descriptor.id:
                    entry.active = entry.id == variant
                if entry.id == variant:
                    entry.api_key = key

        store = self._with_store(mutate)
        logger.info("credential for %s %s", variant, "updated" if key else "cleared")
        return store

    def resolve_llm(self) -> Optional[LlmSelection]:
        """The active text model with a usable credential, or None."""
        data = self.get_models_store()
        descriptor = self.registry.get(data.active_llm_model) if data.active_llm_model else None
        if descriptor is None:
            return None
        entry = next(
            (e for e in data.llm_models if e.text_model_id == descriptor.id and e.active), None
        )
        if entry is None:
            return None
        provider = descriptor.provider(entry.provider)
        if provider is None:
            return None
        if entry.api_key:
            return LlmSelection(descriptor, provider, entry.id, entry.api_key, free_quota=False)
        env_key = _sanitize_key(os.getenv(provider.api_key_env)) if provider.api_key_env else None
        if env_key:
            return LlmSelection(descriptor, provider, entry.id, env_key, free_quota=True)
        return None

    # ------------------------------------------------------------------
    # Usage accounting
    # ------------------------------------------------------------------

    def check_llm_quota(self, selection: LlmSelection) -> None:
        if not selection.free_quota:
            return
        exceeded: list[bool] = []

        def mutate(data: ModelsStore) -> None:
            entry = data.llm_entry(selection.variant_id)
            if entry is None:
                return
            entry.reset_daily_usage(date.today().isoformat())
            exceeded.append(entry.free_total_token_usage >= self.daily_token_limit)

        self._with_store(mutate)
        if exceeded and exceeded[0]:
            raise LlmQuotaExceeded(f"daily free quota of {self.daily_token_limit} tokens used")

    def record_llm_usage(self, variant_id: str, tokens: int, free_quota: bool = False) -> None:
        def mutate(data: ModelsStore) -> None:
            entry = data.llm_entry(variant_id)
            if entry is None:
                return
            entry.reset_daily_usage(date.today().isoformat())
            entry.total_requests += 1
            entry.total_token_usage += max(0, tokens)
            if free_quota:
                entry.free_total_requests += 1
                entry.free_total_token_usage += max(0, tokens)

        self._with_store(mutate)

    def revert_llm_usage(self, variant_id: str, tokens: int) -> None:
        def mutate(data: ModelsStore) -> None:
            entry = data.llm_entry(variant_id)
            if entry is None:
                return
            entry.total_requests = max(0, entry.total_requests - 1)
            entry.total_token_usage = max(0, entry.total_token_usage - tokens)

        self._with_store(mutate)

    def record_asr_usage(self, variant_id: str, duration_seconds: float) -> None:
        def mutate(data: ModelsStore) -> None:
            entry = data.asr_entry(variant_id)
            if entry is None:
                return
            entry.total_requests += 1
            entry.total_hours = max(0.0, entry.total_hours + duration_seconds / 3600.0)

        self._with_store(mutate)

    def revert_asr_usage(self, variant_id: str, duration_seconds: float) -> None:
        def mutate(data: ModelsStore) -> None:
            entry = data.asr_entry(variant_id)
            if entry is None:
                return
            entry.total_requests = max(0, entry.total_requests - 1)
            entry.total_hours = max(0.0, entry.total_hours - duration_seconds / 3600.0)

        self._with_store(mutate)

    def reset_usage_stats(self) -> None:
        def mutate(data: ModelsStore) -> None:
            for entry in data.llm_models:
                entry.total_requests = 0
                entry.total_token_usage = 0
                entry.free_total_requests = 0
                entry.free_total_token_usage = 0
                entry.usage_date = None
            for entry in data.asr_models:
                entry.total_requests = 0
                entry.total_hours = 0.0

        self._with_store(mutate)
