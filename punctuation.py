"""Punctuation restoration over the assembled transcript."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from config import PLACEHOLDER_TEXT
from errors import ERROR_MESSAGES, PUNCTUATION_FAILED
from interfaces import PunctuationModel
from logger import get_logger
from model_registry import ModelDescriptor
from models import TranscriptSegment

try:
    import sherpa_onnx
except Exception:  # pragma: no cover
    sherpa_onnx = None  # type: ignore

logger = get_logger("punctuation")

_LATIN_END = re.compile(r"[A-Za-z0-9]$")
_LATIN_START = re.compile(r"^[A-Za-z0-9]")


class SherpaOnnxPunctuation:
    def __init__(self, model_path: Path, num_threads: int = 1) -> None:
        if sherpa_onnx is None:
            raise RuntimeError("sherpa-onnx is not installed")
        config = sherpa_onnx.OfflinePunctuationConfig(
            model=sherpa_onnx.OfflinePunctuationModelConfig(
                ct_transformer=str(model_path),
                num_threads=num_threads,
            ),
        )
        self._punct = sherpa_onnx.OfflinePunctuation(config)

    def add_punctuation(self, text: str) -> str:
        return self._punct.add_punctuation(text)


def make_punctuation_loader(num_threads: int = 1) -> Callable[[ModelDescriptor, Optional[Path]], object]:
    def load(descriptor: ModelDescriptor, model_dir: Optional[Path]) -> object:
        if model_dir is None:
            raise RuntimeError(f"{descriptor.id} has no install directory")
        logger.info("loading punctuation model %s", descriptor.id)
        return SherpaOnnxPunctuation(model_dir / descriptor.files[0], num_threads)

    return load


def join_texts(parts: list[str]) -> str:
    """Concatenate pieces, adding a space only between two Latin words."""
    out = ""
    for part in parts:
        part = part.strip()
        if not part:
            continue
        if out and _LATIN_END.search(out) and _LATIN_START.search(part):
            out += " "
        out += part
    return out


@dataclass
class RestoredText:
    text: str
    raw_text: str
    warnings: list[str] = field(default_factory=list)


class PunctuationRestorer:
    def __init__(self, model: Optional[PunctuationModel]) -> None:
        self._model = model

    def restore(self, segments: list[TranscriptSegment]) -> RestoredText:
        """Punctuate runs of recognized segments, keeping placeholders verbatim."""
        groups: list[tuple[bool, str]] = []
        run: list[str] = []
        for segment in segments:
            if segment.failed:
                if run:
                    groups.append((True, join_texts(run)))
                    run = []
                groups.append((False, PLACEHOLDER_TEXT))
            else:
                run.append(segment.text)
        if run:
            groups.append((True, join_texts(run)))

        raw_text = join_texts([text for _, text in groups])
        warnings: list[str] = []
        pieces: list[str] = []
        for recognized, text in groups:
            if recognized and text:
                text, warning = self._punctuate(text)
                if warning and warning not in warnings:
                    warnings.append(warning)
            pieces.append(text)
        return RestoredText(text=join_texts(pieces), raw_text=raw_text, warnings=warnings)

    def _punctuate(self, text: str) -> tuple[str, Optional[str]]:
        if self._model is None:
            logger.warning("no punctuation model, keeping raw text")
            return text, ERROR_MESSAGES[PUNCTUATION_FAILED]
        try:
            result = self._model.add_punctuation(text)
        except Exception as exc:
            logger.warning("punctuation failed, keeping raw text: %s", exc)
            return text, ERROR_MESSAGES[PUNCTUATION_FAILED]
        return (result.strip() or text), None
