"""SQLite-backed history of finished dictations and their audio."""

from __future__ import annotations

import os
import re
import uuid
import wave
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np
from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, select

from errors import HistoryIoError
from logger import get_logger
from models import (
    HistoryEntry,
    HistoryKind,
    HistoryListFilter,
    HistoryStats,
    NewHistoryEntry,
    PolishStatus,
)

logger = get_logger("history")

MAX_LIST_LIMIT = 200
AUDIO_DIR_NAME = "audio"

_CJK = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff]")
_LATIN_WORD = re.compile(r"[A-Za-z0-9]+(?:['’-][A-Za-z0-9]+)*")


def count_words(text: str) -> int:
    """Each CJK character counts as a word, plus each Latin word."""
    cjk = len(_CJK.findall(text))
    latin = len(_LATIN_WORD.findall(_CJK.sub(" ", text)))
    return cjk + latin


class HistoryRecord(SQLModel, table=True):
    __tablename__ = "history_entries"

    id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    title: Optional[str] = None
    text: str
    raw_text: Optional[str] = None
    created_at: str = Field(index=True)
    duration_seconds: int = 0
    audio_file_path: Optional[str] = None
    asr_model: Optional[str] = None
    asr_variant_id: Optional[str] = None
    llm_model: Optional[str] = None
    llm_variant_id: Optional[str] = None
    total_words: int = 0
    llm_total_tokens: Optional[int] = None
    polish_status: str = PolishStatus.SKIPPED.value
    polish_error: Optional[str] = None

    def to_entry(self) -> HistoryEntry:
        return HistoryEntry(
            id=self.id,
            kind=HistoryKind(self.kind),
            text=self.text,
            created_at=self.created_at,
            duration_seconds=self.duration_seconds,
            title=self.title,
            raw_text=self.raw_text,
            audio_file_path=self.audio_file_path,
            asr_model=self.asr_model,
            asr_variant_id=self.asr_variant_id,
            llm_model=self.llm_model,
            llm_variant_id=self.llm_variant_id,
            total_words=self.total_words,
            llm_total_tokens=self.llm_total_tokens,
            polish_status=PolishStatus(self.polish_status),
            polish_error=self.polish_error,
        )


@dataclass
class HistoryRemoval:
    """What a deleted entry contributed, so usage can be reverted."""

    entry: HistoryEntry
    audio_removed: bool


class HistoryStore:
    def __init__(self, history_dir: Path) -> None:
        self.history_dir = history_dir
        self.audio_dir = history_dir / AUDIO_DIR_NAME
        try:
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(
                f"sqlite:///{history_dir / 'history.db'}",
                connect_args={"check_same_thread": False},
            )
            SQLModel.metadata.create_all(self._engine)
        except (OSError, SQLAlchemyError) as exc:
            raise HistoryIoError(f"cannot open history database: {exc}") from exc

    def close(self) -> None:
        self._engine.dispose()

    def add(self, new: NewHistoryEntry) -> HistoryEntry:
        record = HistoryRecord(
            id=new.id or str(uuid.uuid4()),
            kind=new.kind.value,
            title=new.title,
            text=new.text,
            raw_text=new.raw_text,
            created_at=new.created_at or datetime.now().astimezone().isoformat(),
            duration_seconds=max(0, int(new.duration_seconds)),
            audio_file_path=new.audio_file_path,
            asr_model=new.asr_model,
            asr_variant_id=new.asr_variant_id,
            llm_model=new.llm_model,
            llm_variant_id=new.llm_variant_id,
            total_words=count_words(new.text),
            llm_total_tokens=new.llm_total_tokens,
            polish_status=new.polish_status.value,
            polish_error=new.polish_error,
        )
        try:
            with Session(self._engine) as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                entry = record.to_entry()
        except SQLAlchemyError as exc:
            logger.exception("failed to write history entry")
            raise HistoryIoError(f"failed to write history entry: {exc}") from exc
        logger.info("history entry %s saved (%d words)", entry.id, entry.total_words)
        return entry

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        try:
            with Session(self._engine) as session:
                record = session.get(HistoryRecord, entry_id)
                return record.to_entry() if record else None
        except SQLAlchemyError as exc:
            raise HistoryIoError(f"failed to read history entry: {exc}") from exc

    def list(self, query: Optional[HistoryListFilter] = None) -> list[HistoryEntry]:
        """Entries newest first; ``limit`` is capped at 200."""
        query = query or HistoryListFilter()
        limit = min(max(1, query.limit), MAX_LIST_LIMIT)
        statement = select(HistoryRecord)
        if query.kind is not None:
            statement = statement.where(HistoryRecord.kind == query.kind.value)
        statement = (
            statement.order_by(HistoryRecord.created_at.desc())
            .offset(max(0, query.offset))
            .limit(limit)
        )
        try:
            with Session(self._engine) as session:
                return [record.to_entry() for record in session.exec(statement).all()]
        except SQLAlchemyError as exc:
            raise HistoryIoError(f"failed to list history: {exc}") from exc

    def stats(self) -> HistoryStats:
        statement = select(
            func.count(HistoryRecord.id),
            func.coalesce(func.sum(HistoryRecord.total_words), 0),
            func.coalesce(func.sum(HistoryRecord.duration_seconds), 0),
        )
        try:
            with Session(self._engine) as session:
                total, words, duration = session.exec(statement).one()
        except SQLAlchemyError as exc:
            raise HistoryIoError(f"failed to read history stats: {exc}") from exc
        return HistoryStats(
            total_entries=int(total),
            total_words=int(words),
            total_duration_seconds=int(duration),
        )

    def delete(self, entry_id: str) -> Optional[HistoryRemoval]:
        """Remove the entry and its audio together, or neither."""
        entry = self.get(entry_id)
        if entry is None:
            return None

        audio = self._audio_path(entry.audio_file_path) if entry.audio_file_path else None
        parked: Optional[Path] = None
        if audio is not None and audio.exists():
            parked = audio.with_name(audio.name + ".deleting")
            try:
                os.replace(audio, parked)
            except OSError as exc:
                raise HistoryIoError(f"failed to remove audio for {entry_id}: {exc}") from exc

        try:
            with Session(self._engine) as session:
                record = session.get(HistoryRecord, entry_id)
                if record is not None:
                    session.delete(record)
                    session.commit()
        except SQLAlchemyError as exc:
            if parked is not None:
                os.replace(parked, audio)
            raise HistoryIoError(f"failed to delete history entry: {exc}") from exc

        if parked is not None:
            try:
                parked.unlink()
            except OSError:
                logger.warning("could not unlink %s", parked)
        logger.info("history entry %s deleted", entry_id)
        return HistoryRemoval(entry=entry, audio_removed=parked is not None)

    def clear(self) -> int:
        try:
            with Session(self._engine) as session:
                removed = session.exec(select(func.count(HistoryRecord.id))).one()
                session.execute(delete(HistoryRecord))
                session.commit()
        except SQLAlchemyError as exc:
            raise HistoryIoError(f"failed to clear history: {exc}") from exc
        for path in self.audio_dir.glob("*"):
            if path.is_file():
                try:
                    path.unlink()
                except OSError:
                    logger.warning("could not unlink %s", path)
        logger.info("history cleared (%d entries)", removed)
        return int(removed)

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------

    def save_audio(self, samples: np.ndarray, sample_rate: int) -> str:
        """Write mono PCM16 WAV; returns the path relative to the history dir."""
        relative = f"{AUDIO_DIR_NAME}/{uuid.uuid4()}.wav"
        target = self.history_dir / relative
        pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2")
        try:
            with wave.open(str(target), "wb") as wf:
                wf.setnchannels(1)
                wf.setsampwidth(2)
                wf.setframerate(sample_rate)
                wf.writeframes(pcm.tobytes())
        except OSError as exc:
            raise HistoryIoError(f"failed to save audio: {exc}") from exc
        return relative

    def discard_audio(self, relative_path: str) -> None:
        """Remove a saved WAV that never made it into an entry."""
        path = self._audio_path(relative_path)
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("could not unlink %s", path)

    def load_audio(self, relative_path: str) -> bytes:
        path = self._audio_path(relative_path)
        if path is None:
            raise HistoryIoError(f"audio path outside history: {relative_path}")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise HistoryIoError(f"failed to read audio: {exc}") from exc

    def _audio_path(self, relative_path: str) -> Optional[Path]:
        candidate = Path(relative_path)
        if not candidate.is_absolute():
            candidate = self.history_dir / candidate
        resolved = candidate.resolve()
        if not resolved.is_relative_to(self.audio_dir.resolve()):
            return None
        return resolved
