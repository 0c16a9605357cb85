"""Command-line entrypoint."""

from __future__ import annotations

import argparse
import json
import os
import sys
import threading
from pathlib import Path
from typing import Optional

from config import DictationConfig, JsonConfigStore
from errors import DictationError
from events import NOTIFICATION, TRANSCRIPT_READY, Event
from hotkey import GlobalHotkeyAdapter
from logger import configure_logging, get_logger
from models import DictationMode, HistoryKind, HistoryListFilter, ModelKind
from service import DictationService

logger = get_logger("main")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Local offline dictation")
    parser.add_argument("--config", default=None, help="settings JSON file")
    parser.add_argument("--data-dir", default=None, help="override the data directory")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="push-to-talk dictation on a global hotkey")
    run.add_argument("--hotkey", default=None, help="pynput key name, e.g. Key.alt_r")
    run.add_argument("--toggle", action="store_true", help="press once to start, again to stop")
    run.add_argument("--diary", action="store_true", help="store sessions as diary entries")

    commands.add_parser("models", help="list models and their readiness")

    download = commands.add_parser("download", help="download and verify an offline model")
    download.add_argument("model_id")

    activate = commands.add_parser("activate", help="select the active model of a kind")
    activate.add_argument("kind", choices=[kind.value for kind in ModelKind])
    activate.add_argument("model_id")

    history = commands.add_parser("history", help="show recent history entries")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--kind", choices=[kind.value for kind in HistoryKind], default=None)
    return parser.parse_args(argv)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _log_event(event: Event) -> None:
    if event.name == TRANSCRIPT_READY:
        print(event.text, flush=True)
    elif event.name == NOTIFICATION:
        logger.info("[%s] %s", event.severity.value, event.message)
    else:
        logger.debug("%s %s", event.name, event.to_payload())


def run_hotkey(service: DictationService, store: JsonConfigStore, args: argparse.Namespace) -> int:
    mode = DictationMode.DIARY if args.diary else DictationMode.NORMAL
    hotkey = GlobalHotkeyAdapter(
        hotkey_name=args.hotkey or store.get_hotkey(),
        mode="toggle" if args.toggle else "hold",
    )

    def on_start() -> None:
        try:
            service.start_dictating(mode)
        except DictationError as exc:
            logger.error("cannot start dictation: %s", exc)
            hotkey.reset()

    def finish() -> None:
        try:
            outcome = service.stop_dictating(ui_triggered=False)
            logger.info(
                "session %d: %d utterances, %.1fs",
                outcome.session_id,
                outcome.utterance_count,
                outcome.duration_seconds,
            )
        except DictationError as exc:
            logger.error("dictation failed: %s", exc)

    def on_stop() -> None:
        # stop blocks until the transcript is stored, keep the listener free
        threading.Thread(target=finish, daemon=True).start()

    try:
        hotkey.start(on_start=on_start, on_stop=on_stop, on_cancel=service.cancel_dictating)
    except RuntimeError as exc:
        logger.error("hotkey disabled: %s", exc)
        return 1

    print("Hold the hotkey and speak, Ctrl+C to quit.", flush=True)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        hotkey.stop()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    store = JsonConfigStore(Path(args.config).expanduser() if args.config else None)
    if args.data_dir:
        os.environ["DICTATION_DATA_DIR"] = args.data_dir
    config = DictationConfig.from_store(store)
    configure_logging(config.log_dir)

    service = DictationService(config, store)
    service.events.subscribe(_log_event)
    try:
        if args.command == "run":
            return run_hotkey(service, store, args)
        if args.command == "models":
            status = service.get_offline_models_status()
            active = service.get_models_store()
            for descriptor in service.models.list_models():
                model_status = status.model(descriptor.id)
                marker = "*" if active.active_id(descriptor.kind) == descriptor.id else " "
                ready = "ready" if model_status is None or model_status.ready else "missing"
                print(f"{marker} {descriptor.kind.value:5} {descriptor.id:60} {ready}")
            return 0
        if args.command == "download":
            status = service.download_offline_models(args.model_id)
            model_status = status.model(args.model_id)
            print(f"{args.model_id}: {'ready' if model_status and model_status.ready else 'not ready'}")
            return 0
        if args.command == "activate":
            service.models.activate(ModelKind(args.kind), args.model_id)
            return 0
        if args.command == "history":
            kind = HistoryKind(args.kind) if args.kind else None
            entries = service.list_history_entries(HistoryListFilter(kind=kind, limit=args.limit))
            _print_json([entry.to_dict() for entry in entries])
            return 0
    except DictationError as exc:
        print(f"error: {exc.user_message} {exc.detail}".rstrip(), file=sys.stderr)
        return 2
    finally:
        service.events.drain(timeout_s=1.0)
        service.close()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
