from __future__ import annotations

from unittest.mock import MagicMock

from config import PLACEHOLDER_TEXT
from errors import ERROR_MESSAGES, PUNCTUATION_FAILED
from models import TranscriptSegment
from punctuation import PunctuationRestorer, join_texts


class FakePunctuation:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def add_punctuation(self, text: str) -> str:
        self.calls.append(text)
        return text + "。"


def test_join_texts_spaces_only_between_latin_words() -> None:
    assert join_texts(["今天", "天气不错"]) == "今天天气不错"
    assert join_texts(["hello", "world"]) == "hello world"
    assert join_texts(["用 Python", "写代码"]) == "用 Python写代码"
    assert join_texts(["", "  a ", ""]) == "a"


def test_punctuation_spans_utterance_boundaries() -> None:
    model = FakePunctuation()
    restored = PunctuationRestorer(model).restore(
        [TranscriptSegment(0, "今天"), TranscriptSegment(1, "天气不错")]
    )
    assert model.calls == ["今天天气不错"]
    assert restored.text == "今天天气不错。"
    assert restored.raw_text == "今天天气不错"
    assert restored.warnings == []


def test_placeholder_is_kept_verbatim_and_not_punctuated() -> None:
    model = FakePunctuation()
    restored = PunctuationRestorer(model).restore(
        [
            TranscriptSegment(0, "第一句"),
            TranscriptSegment(1, "", error="boom"),
            TranscriptSegment(2, "第三句"),
        ]
    )
    assert model.calls == ["第一句", "第三句"]
    assert PLACEHOLDER_TEXT in restored.text
    assert restored.text == f"第一句。{PLACEHOLDER_TEXT}第三句。"


def test_model_failure_falls_back_to_raw_text() -> None:
    model = MagicMock()
    model.add_punctuation.side_effect = RuntimeError("onnx crashed")
    restored = PunctuationRestorer(model).restore([TranscriptSegment(0, "你好世界")])
    assert restored.text == "你好世界"
    assert restored.warnings == [ERROR_MESSAGES[PUNCTUATION_FAILED]]


def test_missing_model_keeps_raw_text_with_warning() -> None:
    restored = PunctuationRestorer(None).restore([TranscriptSegment(0, "hello")])
    assert restored.text == "hello"
    assert restored.warnings == [ERROR_MESSAGES[PUNCTUATION_FAILED]]
