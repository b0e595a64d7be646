#!/usr/bin/env python3
"""
desktop_operator.py: local desktop operator (pyautogui capture + pyautogui/pynput input)

Key behaviors:
- Captures the primary screen with pyautogui (physical pixels) and reports the
  physical/logical ratio as scale_factor; resizes only when the capture does
  not match the expected physical size.
- Maps model boxes into pyautogui (logical) space by dividing out scale_factor.
- Types through pynput, or through a clipboard paste on Windows / for
  non-ASCII text where synthetic keystrokes drop characters.
- Hides on-screen indicators (OverlayController) around capture and around
  every interactive action so they neither appear in frames nor eat clicks.
"""

from __future__ import annotations

import io
import platform
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import pyautogui
import pyperclip
from PIL import Image
from pynput.keyboard import Controller, Key

from action_space import (
    MANUAL,
    PASSIVE_ACTIONS,
    Action,
    ActionType,
    ExecuteResult,
    ScreenshotResult,
    UnsupportedActionError,
)
from agent_env import _env_float, setup_logger
from key_defs import IS_MAC, normalize_key_phrase, split_keys
from overlay import OverlayController
from screen_coords import box_to_device_point

logger = setup_logger("LocalDesktopOperator", "DESKTOP_LOG_LEVEL")

IS_WINDOWS = platform.system().lower() == "windows"

_MODIFIER_NAMES = {"ctrl", "control", "shift", "alt", "option", "cmd", "command", "meta", "win"}


def _pynput_key_map() -> Dict[str, Any]:
    m: Dict[str, Any] = {
        "ctrl": Key.ctrl,
        "control": Key.ctrl,
        "shift": Key.shift,
        "alt": Key.alt,
        "option": Key.alt,
        "cmd": Key.cmd,
        "command": Key.cmd,
        "meta": Key.cmd,
        "win": Key.cmd,
        "enter": Key.enter,
        "return": Key.enter,
        "tab": Key.tab,
        "esc": Key.esc,
        "escape": Key.esc,
        "backspace": Key.backspace,
        "delete": Key.delete,
        "space": Key.space,
        "home": Key.home,
        "end": Key.end,
        "pageup": Key.page_up,
        "pagedown": Key.page_down,
        "capslock": Key.caps_lock,
        "up": Key.up,
        "down": Key.down,
        "left": Key.left,
        "right": Key.right,
        "arrowup": Key.up,
        "arrowdown": Key.down,
        "arrowleft": Key.left,
        "arrowright": Key.right,
    }
    # Not every platform backend defines these.
    for name in ("insert", "print_screen", "num_lock", "scroll_lock", "menu"):
        k = getattr(Key, name, None)
        if k is not None:
            m[name.replace("_", "")] = k
    if "menu" in m:
        m["contextmenu"] = m.pop("menu")
    for i in range(1, 13):
        m[f"f{i}"] = getattr(Key, f"f{i}")
    return m


@dataclass(frozen=True)
class DesktopTimings:
    """Delays in seconds."""

    move_settle: float = 0.1
    press_hold: float = 0.05
    after_click: float = 0.8
    key_hold: float = 0.05
    after_type: float = 1.0
    after_enter: float = 2.0
    after_hotkey: float = 0.5
    after_scroll: float = 0.5
    drag_duration: float = 0.3
    wait: float = 5.0
    overlay_restore: float = 0.1


class DesktopCapture:
    def __init__(self, *, quality: int = 75, scale_factor: Optional[float] = None, screen: Any = pyautogui):
        self.quality = int(quality)
        self.scale_factor_override = scale_factor if scale_factor and scale_factor > 0 else None
        self.screen = screen

    def capture(self) -> ScreenshotResult:
        logical_w, logical_h = self.screen.size()
        img = self.screen.screenshot().convert("RGB")
        cap_w, cap_h = img.size

        scale = self.scale_factor_override or (cap_w / float(logical_w) if logical_w else 1.0)
        physical = (int(round(logical_w * scale)), int(round(logical_h * scale)))
        if (cap_w, cap_h) != physical:
            logger.debug("[screenshot] resize capture=(%d,%d) -> physical=%s", cap_w, cap_h, physical)
            img = img.resize(physical, Image.LANCZOS)

        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=self.quality)
        logger.info("[screenshot] logical=(%d,%d) scale=%.2f", logical_w, logical_h, scale)
        return ScreenshotResult(image_bytes=buf.getvalue(), scale_factor=scale, width=physical[0], height=physical[1])


class DesktopInputEngine:
    SCROLL_CLICKS = 5
    DRAG_STEPS = 10

    def __init__(
        self,
        *,
        mouse: Any = pyautogui,
        keyboard: Any = None,
        clipboard: Any = pyperclip,
        use_paste: Optional[bool] = None,
        timings: DesktopTimings = DesktopTimings(),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.mouse = mouse
        self.kb = keyboard if keyboard is not None else Controller()
        self.clipboard = clipboard
        self.use_paste = IS_WINDOWS if use_paste is None else bool(use_paste)
        self.timings = timings
        self._sleep = sleep
        self._keys = _pynput_key_map()
        self._events: List[Tuple[Any, ...]] = []
        self._screen: Tuple[float, float, float] = (0.0, 0.0, 1.0)

        self._handlers: Dict[ActionType, Callable[[Action], None]] = {
            ActionType.CLICK: lambda a: self._click(a, "left", 1),
            ActionType.DOUBLE_CLICK: lambda a: self._click(a, "left", 2),
            ActionType.RIGHT_CLICK: lambda a: self._click(a, "right", 1),
            ActionType.TYPE: self._type,
            ActionType.HOTKEY: self._hotkey,
            ActionType.PRESS: lambda a: self._key_action(a, "down"),
            ActionType.RELEASE: lambda a: self._key_action(a, "up"),
            ActionType.SCROLL: self._scroll,
            ActionType.DRAG: self._drag,
            ActionType.WAIT: self._wait,
            ActionType.FINISHED: self._noop,
            ActionType.CALL_USER: self._noop,
            ActionType.USER_STOP: self._noop,
            ActionType.ERROR_ENV: self._noop,
        }

    # =============================
    # Dispatch
    # =============================
    def execute(self, action: Action, screen: Optional[ScreenshotResult] = None) -> ExecuteResult:
        if screen is not None and screen.width and screen.height:
            self._screen = (float(screen.width), float(screen.height), float(screen.scale_factor or 1.0))
        else:
            sw, sh = self.mouse.size()
            self._screen = (float(sw), float(sh), 1.0)

        self._events = []
        result = ExecuteResult(action_type=action.action_type, events=self._events)

        handler = self._handlers.get(action.kind) if action.kind else None
        if handler is None:
            logger.warning("[execute] unsupported desktop action: %s", action.action_type)
            return result

        if action.input("start_box"):
            result.start_x, result.start_y = self._point(action.input("start_box"))

        logger.info("[execute] %s start=(%s,%s)", action.action_type, result.start_x, result.start_y)
        try:
            handler(action)
        except Exception as e:
            logger.error("[execute] %s failed: %s", action.action_type, e)
            raise
        return result

    def _point(self, box: str) -> Tuple[Optional[float], Optional[float]]:
        w, h, sf = self._screen
        return box_to_device_point(box, w, h, sf)

    def _emit(self, *event: Any) -> None:
        self._events.append(event)
        logger.debug("[execute] event=%s", event)

    def _map_key(self, name: str) -> Any:
        n = (name or "").strip().lower()
        if n in self._keys:
            return self._keys[n]
        if len(n) == 1:
            return n
        raise UnsupportedActionError(f"Unsupported key: {name}")

    # =============================
    # Handlers
    # =============================
    def _noop(self, action: Action) -> None:
        return None

    def _click(self, action: Action, button: str, count: int) -> None:
        box = action.input("start_box")
        x, y = self._point(box) if box else (None, None)
        if x is None or y is None:
            logger.warning("[execute] %s missing start_box, skipping", action.action_type)
            return
        t = self.timings
        self._emit("move", x, y)
        self.mouse.moveTo(x, y)
        self._sleep(t.move_settle)
        self._emit("click", x, y, button, count)
        self.mouse.click(x, y, clicks=count, interval=t.press_hold, button=button)
        self._sleep(t.after_click)

    def _type(self, action: Action) -> None:
        raw = action.input("content").rstrip(" \t")
        submit = raw.endswith(("\n", "\\n"))
        if raw.endswith("\\n"):
            raw = raw[:-2]
        elif raw.endswith("\n"):
            raw = raw[:-1]
        text = raw.strip()
        if not text:
            logger.warning("[execute] type missing content, skipping")
            return

        if self.use_paste or not text.isascii():
            self._paste(text)
        else:
            self._emit("type", text)
            self.kb.type(text)

        if submit:
            self._sleep(self.timings.key_hold)
            self._tap(Key.enter)
            self._sleep(self.timings.after_enter)
        self._sleep(self.timings.after_type)

    def _paste(self, text: str) -> None:
        previous = ""
        try:
            previous = self.clipboard.paste() or ""
        except Exception as e:
            logger.debug("[execute] clipboard read failed: %s", e)

        self.clipboard.copy(text)
        self._emit("paste", text)
        mod = Key.cmd if IS_MAC else Key.ctrl
        try:
            self.kb.press(mod)
            self.kb.press("v")
            self._sleep(self.timings.key_hold)
            self.kb.release("v")
            self.kb.release(mod)
            self._sleep(self.timings.key_hold)
        finally:
            self.clipboard.copy(previous)

    def _tap(self, key: Any) -> None:
        self._emit("key_down", key)
        self.kb.press(key)
        self._sleep(self.timings.key_hold)
        self._emit("key_up", key)
        self.kb.release(key)

    def _resolve(self, key_str: str) -> List[Tuple[str, Any]]:
        out: List[Tuple[str, Any]] = []
        for token in split_keys(normalize_key_phrase(key_str)):
            try:
                mapped = self._map_key(token)
            except UnsupportedActionError as e:
                logger.warning("[execute] %s, skipping", e)
                continue
            out.append((token.lower(), mapped))
        return out

    def _hotkey(self, action: Action) -> None:
        key_str = action.input("key") or action.input("hotkey")
        if not key_str:
            logger.warning("[execute] hotkey missing key, skipping")
            return
        keys = self._resolve(key_str)
        if not keys:
            logger.warning("[execute] no valid keys in hotkey %r", key_str)
            return

        if len(keys) == 1:
            self._tap(keys[0][1])
        else:
            mods = [k for name, k in keys if name in _MODIFIER_NAMES]
            others = [k for name, k in keys if name not in _MODIFIER_NAMES]
            for m in mods:
                self._emit("key_down", m)
                self.kb.press(m)
            for k in others:
                self._tap(k)
            for m in reversed(mods):
                self._emit("key_up", m)
                self.kb.release(m)
        self._sleep(self.timings.after_hotkey)

    def _key_action(self, action: Action, direction: str) -> None:
        key_str = action.input("key")
        if not key_str:
            logger.warning("[execute] %s missing key, skipping", action.action_type)
            return
        for _, k in self._resolve(key_str):
            if direction == "down":
                self._emit("key_down", k)
                self.kb.press(k)
            else:
                self._emit("key_up", k)
                self.kb.release(k)
            self._sleep(self.timings.key_hold)

    def _scroll(self, action: Action) -> None:
        direction = action.input("direction").strip().lower()
        if direction not in ("up", "down", "left", "right"):
            logger.warning("[execute] unsupported scroll direction: %r", direction)
            return

        box = action.input("start_box")
        if box:
            x, y = self._point(box)
            if x is not None and y is not None:
                self._emit("move", x, y)
                self.mouse.moveTo(x, y)
                self._sleep(self.timings.move_settle)

        clicks = self.SCROLL_CLICKS
        self._emit("scroll", direction, clicks)
        if direction == "up":
            self.mouse.scroll(clicks)
        elif direction == "down":
            self.mouse.scroll(-clicks)
        elif direction == "left":
            self.mouse.hscroll(-clicks)
        else:
            self.mouse.hscroll(clicks)
        self._sleep(self.timings.after_scroll)

    def _drag(self, action: Action) -> None:
        start_box, end_box = action.input("start_box"), action.input("end_box")
        if not start_box or not end_box:
            logger.warning("[execute] drag needs start_box and end_box, skipping")
            return
        sx, sy = self._point(start_box)
        ex, ey = self._point(end_box)
        if sx is None or sy is None or ex is None or ey is None:
            logger.warning("[execute] drag boxes unparseable, skipping")
            return

        t = self.timings
        self._emit("move", sx, sy)
        self.mouse.moveTo(sx, sy)
        self._sleep(t.move_settle)
        self._emit("mouse_down", sx, sy)
        self.mouse.mouseDown(sx, sy, button="left")
        for i in range(1, self.DRAG_STEPS + 1):
            px = sx + (ex - sx) * i / self.DRAG_STEPS
            py = sy + (ey - sy) * i / self.DRAG_STEPS
            self._emit("move", px, py)
            self.mouse.moveTo(px, py, duration=t.drag_duration / self.DRAG_STEPS)
        self._emit("mouse_up", ex, ey)
        self.mouse.mouseUp(ex, ey, button="left")
        self._sleep(t.after_click)

    def _wait(self, action: Action) -> None:
        self._sleep(self.timings.wait)


class LocalDesktopOperator:
    MANUAL = MANUAL

    def __init__(
        self,
        *,
        overlays: Optional[OverlayController] = None,
        capture: Optional[DesktopCapture] = None,
        engine: Optional[DesktopInputEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.overlays = overlays or OverlayController()
        self.capture = capture or DesktopCapture(scale_factor=_env_float("DESKTOP_SCALE_FACTOR", 0.0))
        self.engine = engine or DesktopInputEngine(sleep=sleep)
        self._sleep = sleep
        self._last: Optional[ScreenshotResult] = None

    def screenshot(self) -> ScreenshotResult:
        with self.overlays.hidden():
            shot = self.capture.capture()
        self._last = shot
        return shot

    def execute(self, action: Action) -> ExecuteResult:
        needs_hide = action.kind not in PASSIVE_ACTIONS
        with self.overlays.hidden(enabled=needs_hide):
            try:
                return self.engine.execute(action, screen=self._last)
            finally:
                if needs_hide:
                    self._sleep(self.engine.timings.overlay_restore)

    def close(self) -> None:
        self._last = None
