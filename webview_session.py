"""
webview_session.py

Keeps a Chrome DevTools Protocol channel attached to the page the agent drives.

What this module does:
- BrowserHost owns the Playwright lifetime: attach to a running Chromium over
  CDP (BROWSER_CDP_URL) or launch one with a page at the canonical viewport.
- SurfaceSession finds the target page, opens a CDP session on it, pins the
  viewport to 1280x720 @1x and re-binds transparently when the page is closed
  and recreated or the CDP session is detached.

State machine:
  DISCONNECTED --connect()--> CONNECTING --attach ok--> ATTACHED
  ATTACHED --page "close" / "Inspector.detached"--> DISCONNECTED
  DISCONNECTED --ensure_attached()--> ATTACHED (or OperatorConnectionError)

Nothing outside SurfaceSession attaches or detaches the channel.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from playwright.sync_api import sync_playwright

from action_space import OperatorConnectionError
from agent_env import setup_logger

logger = setup_logger("SurfaceSession", "BROWSER_LOG_LEVEL")

BROWSER_VIEWPORT_WIDTH = 1280
BROWSER_VIEWPORT_HEIGHT = 720


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ATTACHED = "attached"


def _any_page(page: Any) -> bool:
    return True


class SurfaceSession:
    def __init__(
        self,
        browser: Any,
        *,
        surface_filter: Callable[[Any], bool] = _any_page,
        viewport: Tuple[int, int] = (BROWSER_VIEWPORT_WIDTH, BROWSER_VIEWPORT_HEIGHT),
        max_retries: int = 10,
        retry_delay_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.browser = browser
        self.surface_filter = surface_filter
        self.viewport = viewport
        self.max_retries = int(max_retries)
        self.retry_delay_s = float(retry_delay_s)
        self._sleep = sleep

        self._lock = threading.RLock()
        self._page: Any = None
        self._session: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._device_scale_factor: Optional[float] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def page(self) -> Any:
        return self._page

    def _page_alive(self) -> bool:
        try:
            return self._page is not None and not self._page.is_closed()
        except Exception:
            return False

    def _find_surfaces(self) -> List[Any]:
        out: List[Any] = []
        for ctx in list(getattr(self.browser, "contexts", []) or []):
            for page in list(getattr(ctx, "pages", []) or []):
                try:
                    if page.is_closed():
                        continue
                    if self.surface_filter(page):
                        out.append(page)
                except Exception as e:
                    logger.debug("[connect] skip surface: %s", e)
        return out

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def connect(self) -> None:
        """Find the surface (bounded retries), attach and pin the viewport."""
        with self._lock:
            self._state = ConnectionState.CONNECTING
            logger.info("[connect] searching for target surface")

            page = None
            for attempt in range(1, self.max_retries + 1):
                surfaces = self._find_surfaces()
                logger.info("[connect] attempt %d/%d surfaces=%d", attempt, self.max_retries, len(surfaces))
                if surfaces:
                    page = surfaces[0]
                    break
                if attempt < self.max_retries:
                    self._sleep(self.retry_delay_s)

            if page is None:
                self._state = ConnectionState.DISCONNECTED
                raise OperatorConnectionError(
                    "No target surface found after retries. Make sure the browser page is loaded."
                )

            self._bind_page(page)
            self._attach()

    def ensure_attached(self) -> None:
        with self._lock:
            if self._state == ConnectionState.ATTACHED and self._session is not None and self._page_alive():
                return

            if not self._page_alive():
                logger.warning("[connect] surface gone, re-resolving")
                surfaces = self._find_surfaces()
                if not surfaces:
                    self._state = ConnectionState.DISCONNECTED
                    raise OperatorConnectionError("Surface destroyed and no replacement surface available")
                self._bind_page(surfaces[0])
                logger.info("[connect] found new surface url=%s", getattr(self._page, "url", ""))

            self._state = ConnectionState.CONNECTING
            self._attach()

    def close(self) -> None:
        with self._lock:
            self._detach_session()
            self._page = None
            self._state = ConnectionState.DISCONNECTED
            self._device_scale_factor = None

    # -------------------------------------------------------------------------
    # Attach / detach
    # -------------------------------------------------------------------------
    def _bind_page(self, page: Any) -> None:
        self._detach_session()
        self._page = page
        self._device_scale_factor = None

        def _on_close(*_args: Any) -> None:
            if page is not self._page:
                return
            logger.warning("[connect] surface destroyed")
            self._state = ConnectionState.DISCONNECTED
            self._session = None

        page.on("close", _on_close)

    def _detach_session(self) -> None:
        if self._session is None:
            return
        try:
            self._session.detach()
            logger.info("[connect] detached existing channel")
        except Exception as e:
            logger.debug("[connect] detach ignored: %s", e)
        self._session = None

    def _attach(self) -> None:
        self._detach_session()
        page = self._page
        try:
            session = page.context.new_cdp_session(page)
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            raise OperatorConnectionError(f"Cannot attach to surface: {e}") from e

        def _on_detached(params: Optional[Dict[str, Any]] = None) -> None:
            if session is not self._session:
                return
            reason = (params or {}).get("reason", "")
            logger.warning("[connect] channel detached: %s", reason)
            self._state = ConnectionState.DISCONNECTED
            self._session = None

        session.on("Inspector.detached", _on_detached)
        self._session = session
        self._state = ConnectionState.ATTACHED
        logger.info("[connect] channel attached url=%s", getattr(page, "url", ""))

        try:
            self._apply_viewport()
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            self._session = None
            raise OperatorConnectionError(f"Cannot pin viewport: {e}") from e

    def _apply_viewport(self) -> None:
        w, h = self.viewport
        self._session.send(
            "Emulation.setDeviceMetricsOverride",
            {"width": w, "height": h, "deviceScaleFactor": 1, "mobile": False},
        )
        self._device_scale_factor = 1.0
        logger.info("[connect] fixed viewport %dx%d @1x", w, h)

    # -------------------------------------------------------------------------
    # Protocol
    # -------------------------------------------------------------------------
    def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        with self._lock:
            self.ensure_attached()
            session = self._session
        return session.send(method, params or {})

    def device_scale_factor(self) -> float:
        if self._device_scale_factor:
            return self._device_scale_factor
        try:
            res = self.send(
                "Runtime.evaluate",
                {"expression": "window.devicePixelRatio", "returnByValue": True},
            )
            ratio = ((res or {}).get("result") or {}).get("value")
            if isinstance(ratio, (int, float)) and ratio > 0:
                self._device_scale_factor = float(ratio)
                return self._device_scale_factor
        except OperatorConnectionError:
            raise
        except Exception as e:
            logger.debug("[connect] devicePixelRatio query failed: %s", e)
        self._device_scale_factor = 1.0
        return 1.0


class BrowserHost:
    """Owns the Playwright driver and the browser the surface lives in."""

    def __init__(
        self,
        *,
        cdp_url: Optional[str] = None,
        headless: bool = False,
        start_url: Optional[str] = None,
        viewport: Tuple[int, int] = (BROWSER_VIEWPORT_WIDTH, BROWSER_VIEWPORT_HEIGHT),
        channel: Optional[str] = None,
    ):
        self.cdp_url = (cdp_url or "").strip() or None
        self.headless = bool(headless)
        self.start_url = (start_url or "").strip() or None
        self.viewport = viewport
        self.channel = channel

        self._pw = None
        self._browser = None

    @property
    def browser(self) -> Any:
        if self._browser is None:
            raise RuntimeError("Browser not started. Call start() first.")
        return self._browser

    def start(self) -> Any:
        self._pw = sync_playwright().start()
        try:
            if self.cdp_url:
                logger.info("[browser] connect_over_cdp url=%s", self.cdp_url)
                self._browser = self._pw.chromium.connect_over_cdp(self.cdp_url)
                return self._browser

            launch_kwargs: Dict[str, Any] = {
                "headless": self.headless,
                "args": ["--disable-blink-features=AutomationControlled", "--disable-dev-shm-usage"],
            }
            if self.channel:
                launch_kwargs["channel"] = self.channel
            logger.info("[browser] launch headless=%s channel=%s", self.headless, self.channel or "playwright-managed")
            self._browser = self._pw.chromium.launch(**launch_kwargs)

            context = self._browser.new_context(viewport={"width": self.viewport[0], "height": self.viewport[1]})
            page = context.new_page()
            if self.start_url:
                page.goto(self.start_url)
            return self._browser
        except Exception:
            self.stop()
            raise

    def stop(self) -> None:
        try:
            if self._browser is not None:
                self._browser.close()
        except Exception as e:
            logger.debug("[browser] close ignored: %s", e)
        try:
            if self._pw is not None:
                self._pw.stop()
        except Exception as e:
            logger.debug("[browser] playwright stop ignored: %s", e)
        self._browser = None
        self._pw = None
