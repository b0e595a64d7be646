"""
webview_operator.py

Operator for an embedded page surface driven over the Chrome DevTools Protocol.

- CdpCapture: Page.captureScreenshot at the canonical 1280x720 viewport.
- CdpInputEngine: turns one Action into an ordered list of Input.* / Page.*
  commands with the settle delays the page needs between them.
- EmbeddedBrowserOperator: screenshot()/execute() on top of both, with every
  protocol call routed through SurfaceSession (which re-attaches as needed).

Logging policy:
- INFO: one line per action
- DEBUG: coordinates / per-event details
- WARNING: skipped keys, unsupported actions, blocked navigation
"""

from __future__ import annotations

import base64
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from action_space import (
    BROWSER_MANUAL,
    Action,
    ActionType,
    ExecuteResult,
    ScreenshotResult,
)
from agent_env import setup_logger
from key_defs import IS_MAC, KEY_DEFS, KeyDef, build_key_defs, modifier_mask, resolve_keys, shortcut_command
from overlay import OverlayController
from screen_coords import box_to_device_point
from webview_session import BROWSER_VIEWPORT_HEIGHT, BROWSER_VIEWPORT_WIDTH, SurfaceSession

logger = setup_logger("EmbeddedBrowserOperator", "BROWSER_LOG_LEVEL")

ALLOWED_SCHEMES = ("http", "https")
_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):(?!\d)")
_HTTP_PREFIX_RE = re.compile(r"^https?://", re.IGNORECASE)


def is_valid_navigation_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            return False
        if not parts.hostname:
            return False
        _ = parts.port  # raises ValueError on a non-numeric port
        return True
    except ValueError:
        return False


def normalize_navigation_url(raw: str) -> Optional[str]:
    """Default to https://, reject anything that is not http(s)."""
    url = (raw or "").strip()
    if not url:
        return None
    m = _SCHEME_RE.match(url)
    if m and m.group(1).lower() not in ALLOWED_SCHEMES:
        return None
    if not _HTTP_PREFIX_RE.match(url):
        url = "https://" + url
    return url if is_valid_navigation_url(url) else None


@dataclass(frozen=True)
class CdpTimings:
    """Delays in milliseconds."""

    move_settle: int = 100
    press_hold: int = 50
    after_click: int = 800
    key_hold: int = 50
    after_type: int = 1000
    after_enter: int = 2000
    after_hotkey: int = 500
    after_release: int = 500
    after_scroll: int = 500
    drag_step: int = 30
    drag_steps: int = 10
    after_navigate: int = 2000
    after_back: int = 1000
    wait: int = 5000


class CdpInputEngine:
    SCROLL_AMOUNT = 500

    def __init__(
        self,
        session: SurfaceSession,
        *,
        viewport: Tuple[int, int] = (BROWSER_VIEWPORT_WIDTH, BROWSER_VIEWPORT_HEIGHT),
        is_mac: bool = IS_MAC,
        timings: CdpTimings = CdpTimings(),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.viewport = viewport
        self.is_mac = bool(is_mac)
        self.key_defs: Dict[str, KeyDef] = KEY_DEFS if is_mac == IS_MAC else build_key_defs(is_mac)
        self.timings = timings
        self._sleep = sleep
        self._events: List[Tuple[str, Dict[str, Any]]] = []

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
            ActionType.NAVIGATE: self._navigate,
            ActionType.NAVIGATE_BACK: self._navigate_back,
            ActionType.WAIT: self._wait,
            ActionType.FINISHED: self._noop,
            ActionType.CALL_USER: self._noop,
            ActionType.USER_STOP: self._noop,
            ActionType.ERROR_ENV: self._noop,
        }

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------
    def execute(self, action: Action) -> ExecuteResult:
        self._events = []
        result = ExecuteResult(action_type=action.action_type, events=self._events)

        handler = self._handlers.get(action.kind) if action.kind else None
        if handler is None:
            logger.warning("[execute] unsupported action: %s", action.action_type)
            return result

        start_box = action.input("start_box")
        if start_box:
            result.start_x, result.start_y = self._point(start_box)

        logger.info("[execute] %s start=(%s,%s) inputs=%s", action.action_type, result.start_x, result.start_y, action.action_inputs)
        try:
            handler(action)
        except Exception as e:
            logger.error("[execute] %s failed after %d events: %s", action.action_type, len(self._events), e)
            raise
        logger.debug("[execute] %s completed events=%d", action.action_type, len(self._events))
        return result

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------
    def _cdp(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        params = params or {}
        self._events.append((method, params))
        return self.session.send(method, params)

    def _delay(self, ms: int) -> None:
        if ms > 0:
            self._sleep(ms / 1000.0)

    def _point(self, box: str) -> Tuple[Optional[float], Optional[float]]:
        w, h = self.viewport
        return box_to_device_point(box, w, h, self.session.device_scale_factor())

    def _mouse_move(self, x: float, y: float) -> None:
        self._cdp("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y, "button": "none", "clickCount": 0})

    def _mouse_button(self, kind: str, x: float, y: float, button: str, count: int) -> None:
        self._cdp("Input.dispatchMouseEvent", {"type": kind, "x": x, "y": y, "button": button, "clickCount": count})

    def _key_event(self, kind: str, k: KeyDef, modifiers: Optional[int] = None, commands: Optional[List[str]] = None) -> None:
        params: Dict[str, Any] = {"type": kind, "key": k.key, "code": k.code, "windowsVirtualKeyCode": k.key_code}
        if modifiers is not None:
            params["modifiers"] = modifiers
        if commands:
            params["commands"] = commands
        self._cdp("Input.dispatchKeyEvent", params)

    def _key_tap(self, k: KeyDef) -> None:
        self._key_event("rawKeyDown", k)
        self._delay(self.timings.key_hold)
        self._key_event("keyUp", k)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------
    def _noop(self, action: Action) -> None:
        return None

    def _click(self, action: Action, button: str, count: int) -> None:
        box = action.input("start_box")
        x, y = self._point(box) if box else (None, None)
        if x is None or y is None:
            logger.warning("[execute] %s missing start_box, skipping", action.action_type)
            return
        t = self.timings
        self._mouse_move(x, y)
        self._delay(t.move_settle)
        self._mouse_button("mousePressed", x, y, button, count)
        self._delay(t.press_hold)
        self._mouse_button("mouseReleased", x, y, button, count)
        self._delay(t.after_click)

    def _type(self, action: Action) -> None:
        raw = action.input("content").rstrip(" \t")
        submit = raw.endswith(("\n", "\\n"))
        text = re.sub(r"(\\n|\n)\Z", "", raw).strip()
        if not text:
            logger.warning("[execute] type missing content, skipping")
            return

        logger.debug("[execute] type chars=%d submit=%s", len(text), submit)
        self._cdp("Input.insertText", {"text": text})

        if submit:
            self._delay(self.timings.key_hold)
            self._key_tap(self.key_defs["enter"])
            self._delay(self.timings.after_enter)
        self._delay(self.timings.after_type)

    def _hotkey(self, action: Action) -> None:
        key_str = action.input("key") or action.input("hotkey")
        if not key_str:
            logger.warning("[execute] hotkey missing key, skipping")
            return

        defs, unknown = resolve_keys(key_str, self.key_defs)
        for token in unknown:
            logger.warning("[execute] unsupported key %r, skipping", token)
        if not defs:
            logger.warning("[execute] no valid keys in hotkey %r", key_str)
            return

        if len(defs) == 1:
            self._key_tap(defs[0])
        else:
            modifiers = [d for d in defs if d.is_modifier]
            others = [d for d in defs if not d.is_modifier]
            bits = modifier_mask(modifiers)
            command = shortcut_command(defs) if self.is_mac else ""

            for m in modifiers:
                self._key_event("rawKeyDown", m, modifiers=bits)
            for k in others:
                self._key_event("rawKeyDown", k, modifiers=bits, commands=[command] if command else None)
                self._delay(self.timings.key_hold)
                self._key_event("keyUp", k, modifiers=bits)
            for m in reversed(modifiers):
                self._key_event("keyUp", m, modifiers=0)

        self._delay(self.timings.after_hotkey)

    def _key_action(self, action: Action, direction: str) -> None:
        key_str = action.input("key")
        if not key_str:
            logger.warning("[execute] %s missing key, skipping", action.action_type)
            return

        defs, unknown = resolve_keys(key_str, self.key_defs)
        for token in unknown:
            logger.warning("[execute] unsupported key in %s: %r, skipping", direction, token)
        kind = "rawKeyDown" if direction == "down" else "keyUp"
        for d in defs:
            self._key_event(kind, d)
            self._delay(self.timings.key_hold)
        if direction == "up":
            self._delay(self.timings.after_release)

    def _scroll(self, action: Action) -> None:
        direction = action.input("direction").strip().lower()
        amount = self.SCROLL_AMOUNT
        deltas = {
            "up": (0, -amount),
            "down": (0, amount),
            "left": (-amount, 0),
            "right": (amount, 0),
        }
        if direction not in deltas:
            logger.warning("[execute] unsupported scroll direction: %r", direction)
            return

        metrics = self._cdp("Page.getLayoutMetrics") or {}
        viewport = metrics.get("cssLayoutViewport") or {}
        cx = (viewport.get("clientWidth") or 800) / 2
        cy = (viewport.get("clientHeight") or 600) / 2

        dx, dy = deltas[direction]
        self._cdp("Input.dispatchMouseEvent", {"type": "mouseWheel", "x": cx, "y": cy, "deltaX": dx, "deltaY": dy})
        self._delay(self.timings.after_scroll)

    def _drag(self, action: Action) -> None:
        start_box = action.input("start_box")
        end_box = action.input("end_box")
        if not start_box or not end_box:
            logger.warning("[execute] drag needs start_box and end_box, skipping")
            return

        sx, sy = self._point(start_box)
        ex, ey = self._point(end_box)
        if sx is None or sy is None or ex is None or ey is None:
            logger.warning("[execute] drag boxes unparseable, skipping")
            return

        t = self.timings
        self._mouse_move(sx, sy)
        self._delay(t.move_settle)
        self._mouse_button("mousePressed", sx, sy, "left", 1)

        steps = max(1, t.drag_steps)
        for i in range(1, steps + 1):
            self._mouse_move(sx + (ex - sx) * i / steps, sy + (ey - sy) * i / steps)
            self._delay(t.drag_step)

        self._delay(t.move_settle)
        self._mouse_button("mouseReleased", ex, ey, "left", 1)
        self._delay(t.after_click)

    def _navigate(self, action: Action) -> None:
        raw = action.input("content") or action.input("url")
        if not raw:
            logger.warning("[execute] navigate missing content, skipping")
            return
        url = normalize_navigation_url(raw)
        if url is None:
            logger.warning("[execute] blocked navigation to unsafe url: %r", raw)
            return
        logger.info("[execute] navigate url=%s", url)
        self._cdp("Page.navigate", {"url": url})
        self._delay(self.timings.after_navigate)

    def _navigate_back(self, action: Action) -> None:
        self._cdp("Runtime.evaluate", {"expression": "history.back()", "awaitPromise": False})
        self._delay(self.timings.after_back)

    def _wait(self, action: Action) -> None:
        self._delay(self.timings.wait)


class CdpCapture:
    def __init__(self, session: SurfaceSession, *, quality: int = 75,
                 viewport: Tuple[int, int] = (BROWSER_VIEWPORT_WIDTH, BROWSER_VIEWPORT_HEIGHT)):
        self.session = session
        self.quality = int(quality)
        self.viewport = viewport

    def capture(self) -> ScreenshotResult:
        self.session.ensure_attached()
        scale = self.session.device_scale_factor()

        t0 = time.time()
        res = self.session.send("Page.captureScreenshot", {"format": "jpeg", "quality": self.quality}) or {}
        data = res.get("data") or ""
        if not data:
            raise RuntimeError("Page.captureScreenshot returned no data")
        logger.info("[screenshot] taken in %dms", int((time.time() - t0) * 1000))

        w, h = self.viewport
        return ScreenshotResult(
            image_bytes=base64.b64decode(data),
            scale_factor=scale,
            width=int(round(w * scale)),
            height=int(round(h * scale)),
        )


class EmbeddedBrowserOperator:
    MANUAL = BROWSER_MANUAL

    def __init__(
        self,
        session: SurfaceSession,
        *,
        overlays: Optional[OverlayController] = None,
        is_mac: bool = IS_MAC,
        timings: CdpTimings = CdpTimings(),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.overlays = overlays or OverlayController()
        self.capture = CdpCapture(session, viewport=session.viewport)
        self.engine = CdpInputEngine(session, viewport=session.viewport, is_mac=is_mac, timings=timings, sleep=sleep)

    def connect(self) -> None:
        self.session.connect()

    def screenshot(self) -> ScreenshotResult:
        with self.overlays.hidden():
            return self.capture.capture()

    def execute(self, action: Action) -> ExecuteResult:
        self.session.ensure_attached()
        return self.engine.execute(action)

    def close(self) -> None:
        self.session.close()
