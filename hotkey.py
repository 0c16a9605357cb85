"""Global push-to-talk hotkey adapter based on pynput."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from logger import get_logger

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = get_logger("hotkey")


class GlobalHotkeyAdapter:
    """Maps key events to start / stop / cancel callbacks.

    ``hold`` mode starts on press and stops on release; ``toggle`` mode
    starts on one press and stops on the next. The cancel key only fires
    while a recording is active.
    """

    def __init__(
        self,
        hotkey_name: str = "Key.alt_r",
        cancel_key_name: Optional[str] = "Key.esc",
        mode: str = "hold",
    ) -> None:
        if mode not in ("hold", "toggle"):
            raise ValueError(f"unknown hotkey mode: {mode}")
        self._hotkey_name = hotkey_name
        self._cancel_key_name = cancel_key_name
        self._mode = mode
        self._listener: Optional[object] = None
        self._key_down = False
        self._active = False
        self._lock = threading.Lock()
        self._on_start: Callable[[], None] = lambda: None
        self._on_stop: Callable[[], None] = lambda: None
        self._on_cancel: Callable[[], None] = lambda: None

    @property
    def active(self) -> bool:
        return self._active

    def start(
        self,
        on_start: Callable[[], None],
        on_stop: Callable[[], None],
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        self._on_start = on_start
        self._on_stop = on_stop
        self._on_cancel = on_cancel or (lambda: None)
        self._listener = keyboard.Listener(on_press=self.handle_press, on_release=self.handle_release)
        self._listener.start()
        logger.info("hotkey %s armed (%s mode)", self._hotkey_name, self._mode)

    def stop(self) -> None:
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None

    def handle_press(self, key: object) -> None:
        name = str(key)
        if self._cancel_key_name and name == self._cancel_key_name:
            with self._lock:
                if not self._active:
                    return
                self._active = False
            self._on_cancel()
            return
        if name != self._hotkey_name:
            return

        with self._lock:
            if self._key_down:
                return
            self._key_down = True
            starting = not self._active
            if self._mode == "hold" and not starting:
                return
            self._active = starting
        if starting:
            self._on_start()
        else:
            self._on_stop()

    def handle_release(self, key: object) -> None:
        if str(key) != self._hotkey_name:
            return
        with self._lock:
            if not self._key_down:
                return
            self._key_down = False
            if self._mode != "hold" or not self._active:
                return
            self._active = False
        self._on_stop()

    def reset(self) -> None:
        """Forget the active flag after the session ended elsewhere."""
        with self._lock:
            self._active = False
