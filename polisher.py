"""Optional LLM polishing of the punctuated transcript.

Two backends are supported: any OpenAI compatible chat-completions endpoint
(DeepSeek, ModelScope) over ``requests``, and DashScope's ``Generation`` API
for Qwen. Every failure falls back to the text as it was before polishing.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

import requests

from errors import LlmAuthError, LlmError, LlmQuotaExceeded, LlmTimeout
from interfaces import PolishBackend
from logger import get_logger
from model_manager import LlmSelection, ModelManager
from model_registry import LlmProvider
from models import PolishResult, PolishStatus

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = get_logger("polisher")

BackendFactory = Callable[[LlmProvider, str], PolishBackend]

_POLL_S = 0.05


def _messages(system_prompt: str, text: str) -> list[dict]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": text},
    ]


def _map_error(exc: Exception) -> LlmError:
    """Map an SDK/network exception to an LLM error type."""
    message = str(exc)
    low = message.lower()
    if "401" in low or "403" in low or "auth" in low or "api key" in low:
        return LlmAuthError(message)
    if "timeout" in low or "timed out" in low:
        return LlmTimeout(message)
    return LlmError(message)


class OpenAICompatibleBackend:
    def __init__(
        self,
        provider: LlmProvider,
        api_key: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not provider.api_base_url:
            raise LlmError(f"{provider.id} has no API endpoint")
        self._provider = provider
        self._api_key = api_key
        self._session = session or requests.Session()

    def complete(
        self,
        system_prompt: str,
        text: str,
        timeout_s: float,
        max_tokens: Optional[int] = None,
    ) -> tuple[str, int]:
        payload: dict[str, Any] = {
            "model": self._provider.model,
            "messages": _messages(system_prompt, text),
            "temperature": 0.3,
            "stream": False,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        try:
            response = self._session.post(
                self._provider.api_base_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=timeout_s,
            )
        except requests.Timeout as exc:
            raise LlmTimeout(str(exc)) from exc
        except requests.RequestException as exc:
            raise LlmError(str(exc)) from exc

        if response.status_code in (401, 403):
            raise LlmAuthError(f"{self._provider.name} rejected the API key ({response.status_code})")
        if response.status_code >= 400:
            raise LlmError(f"{self._provider.name} returned HTTP {response.status_code}")
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LlmError(f"malformed response from {self._provider.name}") from exc
        tokens = int((body.get("usage") or {}).get("total_tokens") or 0)
        return str(content or "").strip(), tokens


class DashscopeBackend:
    def __init__(self, provider: LlmProvider, api_key: str) -> None:
        self._provider = provider
        self._api_key = api_key

    def complete(
        self,
        system_prompt: str,
        text: str,
        timeout_s: float,
        max_tokens: Optional[int] = None,
    ) -> tuple[str, int]:
        if dashscope is None:
            raise LlmError("dashscope is not installed")
        kwargs: dict[str, Any] = {}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        try:
            response = dashscope.Generation.call(
                api_key=self._api_key,
                model=self._provider.model,
                messages=_messages(system_prompt, text),
                result_format="message",
                timeout=timeout_s,
                **kwargs,
            )
        except Exception as exc:
            raise _map_error(exc) from exc

        status = _field(response, "status_code")
        if status in (401, 403):
            raise LlmAuthError(str(_field(response, "message") or "invalid API key"))
        if status is not None and status != 200:
            raise LlmError(f"DashScope returned {status}: {_field(response, 'message')}")
        return self._extract_text(response), self._extract_tokens(response)

    def _extract_text(self, response: object) -> str:
        """Pull the reply text from a DashScope message-format response."""
        output = _field(response, "output") or {}
        choices = _field(output, "choices") or []
        if not choices:
            raise LlmError("DashScope response has no choices")
        message = _field(choices[0], "message") or {}
        return str(_field(message, "content") or "").strip()

    def _extract_tokens(self, response: object) -> int:
        usage = _field(response, "usage") or {}
        return int(_field(usage, "total_tokens") or 0)


def _field(obj: object, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def make_backend(provider: LlmProvider, api_key: str) -> PolishBackend:
    if provider.backend == "dashscope":
        return DashscopeBackend(provider, api_key)
    return OpenAICompatibleBackend(provider, api_key)


def probe_credential(
    provider: LlmProvider,
    api_key: str,
    timeout_s: float = 10.0,
    backend_factory: BackendFactory = make_backend,
) -> None:
    """Make one tiny request; raises LlmAuthError when the key is refused."""
    backend = backend_factory(provider, api_key)
    backend.complete("Reply with OK.", "ping", timeout_s, max_tokens=8)


class TextPolisher:
    def __init__(
        self,
        model_manager: ModelManager,
        system_prompt: str,
        timeout_s: float = 8.0,
        enabled: bool = True,
        backend_factory: BackendFactory = make_backend,
    ) -> None:
        self._manager = model_manager
        self._system_prompt = system_prompt
        self._timeout_s = timeout_s
        self._backend_factory = backend_factory
        self.enabled = enabled

    def is_configured(self) -> bool:
        return self.enabled and self._manager.resolve_llm() is not None

    def polish(self, text: str, cancel_event: Optional[threading.Event] = None) -> PolishResult:
        if not self.enabled or not text.strip():
            return PolishResult(text=text, status=PolishStatus.SKIPPED)
        selection = self._manager.resolve_llm()
        if selection is None:
            return PolishResult(text=text, status=PolishStatus.SKIPPED)

        try:
            self._manager.check_llm_quota(selection)
        except LlmQuotaExceeded as exc:
            logger.info("free polishing quota used up for %s", selection.variant_id)
            return self._fallback(text, selection, PolishStatus.QUOTA_EXCEEDED, exc)

        started = time.monotonic()
        try:
            backend = self._backend_factory(selection.provider, selection.api_key)
            polished, tokens = self._call(backend, text, cancel_event)
        except LlmError as exc:
            logger.warning("polishing with %s failed: %s", selection.variant_id, exc)
            return self._fallback(text, selection, PolishStatus.FAILED, exc)

        if cancel_event is not None and cancel_event.is_set():
            return PolishResult(text=text, status=PolishStatus.SKIPPED)
        if not polished:
            return self._fallback(text, selection, PolishStatus.FAILED, LlmError("empty response"))

        self._manager.record_llm_usage(selection.variant_id, tokens, free_quota=selection.free_quota)
        logger.info(
            "polished %d chars with %s in %.2fs (%d tokens)",
            len(text),
            selection.variant_id,
            time.monotonic() - started,
            tokens,
        )
        return PolishResult(
            text=polished,
            status=PolishStatus.SUCCESS,
            total_tokens=tokens,
            llm_model=selection.descriptor.id,
            llm_variant_id=selection.variant_id,
        )

    def _fallback(
        self,
        text: str,
        selection: LlmSelection,
        status: PolishStatus,
        exc: LlmError,
    ) -> PolishResult:
        return PolishResult(
            text=text,
            status=status,
            error=exc.user_message,
            llm_model=selection.descriptor.id,
            llm_variant_id=selection.variant_id,
        )

    def _call(
        self,
        backend: PolishBackend,
        text: str,
        cancel_event: Optional[threading.Event],
    ) -> tuple[str, int]:
        """Run the request on a worker thread and give up at the deadline.

        A late reply is dropped, so usage is never recorded for it.
        """
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def _worker() -> None:
            try:
                outcome["value"] = backend.complete(self._system_prompt, text, self._timeout_s)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=_worker, name="llm-polish", daemon=True).start()
        deadline = time.monotonic() + self._timeout_s
        while not done.wait(_POLL_S):
            if cancel_event is not None and cancel_event.is_set():
                raise LlmError("polishing cancelled")
            if time.monotonic() >= deadline:
                raise LlmTimeout(f"no reply within {self._timeout_s:.1f}s")

        error = outcome.get("error")
        if isinstance(error, LlmError):
            raise error
        if error is not None:
            raise _map_error(error)
        return outcome["value"]
