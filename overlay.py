"""
overlay.py

On-screen automation indicators and the shared "overlays hidden" state.

OverlayController is handed to operators at construction. Capture and input
paths wrap their work in `with overlays.hidden():` so indicators never show up
in a screenshot or swallow a synthetic click. Hides nest: overlays come back
only when the outermost block exits, including when the block raises.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Protocol

from agent_env import setup_logger

logger = setup_logger("Overlay", "AGENT_LOG_LEVEL")


class Overlay(Protocol):
    def hide(self) -> None: ...

    def show(self) -> None: ...


class OverlayController:
    def __init__(self, *, settle_s: float = 0.05, sleep: Callable[[float], None] = time.sleep):
        self.settle_s = float(settle_s)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._overlays: List[Overlay] = []
        self._depth = 0

    def register(self, overlay: Overlay) -> None:
        with self._lock:
            self._overlays.append(overlay)
            hidden = self._depth > 0
        if hidden:
            overlay.hide()

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def is_hidden(self) -> bool:
        return self._depth > 0

    def hide(self) -> None:
        with self._lock:
            self._depth += 1
            first = self._depth == 1
            overlays = list(self._overlays)
        if not first:
            return
        for o in overlays:
            try:
                o.hide()
            except Exception as e:
                logger.debug("[overlay] hide failed: %s", e)
        if overlays and self.settle_s > 0:
            self._sleep(self.settle_s)

    def restore(self) -> None:
        with self._lock:
            if self._depth == 0:
                logger.warning("[overlay] restore without matching hide")
                return
            self._depth -= 1
            last = self._depth == 0
            overlays = list(self._overlays)
        if not last:
            return
        for o in overlays:
            try:
                o.show()
            except Exception as e:
                logger.debug("[overlay] show failed: %s", e)

    @contextmanager
    def hidden(self, enabled: bool = True) -> Iterator[None]:
        if not enabled:
            yield
            return
        self.hide()
        try:
            yield
        finally:
            self.restore()


class ClickMarker:
    """Small always-on-top target drawn where the model is about to click.

    The Tk window lives on its own daemon thread and polls the hidden flag,
    so hide()/show() are safe from any thread.
    """

    SIZE = 60

    def __init__(self, *, enabled: bool = True, duration_s: float = 1.0):
        self.enabled = bool(enabled)
        self.duration_s = float(duration_s)
        self._hidden = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def hide(self) -> None:
        self._hidden.set()

    def show(self) -> None:
        self._hidden.clear()

    def mark(self, x: int, y: int) -> None:
        if not self.enabled or self._hidden.is_set():
            return
        self._thread = threading.Thread(target=self._run, args=(int(x), int(y)), daemon=True)
        self._thread.start()

    def _run(self, x: int, y: int) -> None:
        try:
            import tkinter as tk

            root = tk.Tk()
            root.attributes("-alpha", 0.7)
            root.attributes("-topmost", True)
            root.overrideredirect(True)
            size = self.SIZE
            root.geometry(f"{size}x{size}+{x - size // 2}+{y - size // 2}")

            canvas = tk.Canvas(root, width=size, height=size, bg="red", highlightthickness=0)
            canvas.pack()
            canvas.create_oval(10, 10, size - 10, size - 10, outline="white", width=4)
            canvas.create_line(size // 2, 10, size // 2, size - 10, fill="white", width=2)
            canvas.create_line(10, size // 2, size - 10, size // 2, fill="white", width=2)

            def _sync() -> None:
                if self._hidden.is_set():
                    root.withdraw()
                else:
                    root.deiconify()
                root.after(50, _sync)

            _sync()
            root.after(int(self.duration_s * 1000), root.destroy)
            root.mainloop()
        except Exception as e:
            logger.debug("[marker] overlay unavailable: %s", e)
