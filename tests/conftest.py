from __future__ import annotations

import base64
from typing import Any, Callable, Dict, List, Optional

import pytest

from action_space import Action, ExecuteResult, ScreenshotResult


class FakeCdpSession:
    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = responses if responses is not None else {}
        self.sent: List[tuple] = []
        self.handlers: Dict[str, List[Callable]] = {}
        self.detached = False
        self.fail_on: Optional[str] = None

    def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self.detached:
            raise RuntimeError("Target page, context or browser has been closed")
        if self.fail_on == method:
            raise RuntimeError(f"{method} failed")
        self.sent.append((method, params or {}))
        res = self.responses.get(method)
        return res(params) if callable(res) else res

    def on(self, event: str, handler: Callable) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def detach(self) -> None:
        self.detached = True

    def fire(self, event: str, params: Optional[Dict[str, Any]] = None) -> None:
        for h in list(self.handlers.get(event, [])):
            h(params or {})

    def methods(self) -> List[str]:
        return [m for m, _ in self.sent]


class FakeContext:
    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.pages: List["FakePage"] = []
        self.sessions: List[FakeCdpSession] = []
        self.responses = responses if responses is not None else {}
        self.fail_attach = False

    def new_cdp_session(self, page: "FakePage") -> FakeCdpSession:
        if self.fail_attach:
            raise RuntimeError("cannot attach")
        s = FakeCdpSession(self.responses)
        self.sessions.append(s)
        page.sessions.append(s)
        return s

    def new_page(self, url: str = "about:blank") -> "FakePage":
        p = FakePage(self, url)
        self.pages.append(p)
        return p


class FakePage:
    def __init__(self, context: FakeContext, url: str = "about:blank"):
        self.context = context
        self.url = url
        self.closed = False
        self.handlers: Dict[str, List[Callable]] = {}
        self.sessions: List[FakeCdpSession] = []

    def on(self, event: str, handler: Callable) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def is_closed(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True
        if self in self.context.pages:
            self.context.pages.remove(self)
        for h in list(self.handlers.get("close", [])):
            h(self)

    @property
    def session(self) -> FakeCdpSession:
        return self.sessions[-1]


class FakeBrowser:
    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.contexts: List[FakeContext] = [FakeContext(responses)]

    @property
    def context(self) -> FakeContext:
        return self.contexts[0]


class ScriptedModel:
    """Returns scripted predictions in order; Exceptions in the script are raised.
    The last entry repeats once the script runs out."""

    def __init__(self, script: List[Any], on_predict: Optional[Callable[[int], None]] = None):
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []
        self.on_predict = on_predict

    def predict(self, instruction, screenshots, history, *, auth_headers=None, images=None) -> str:
        self.calls.append(
            {
                "instruction": instruction,
                "screenshots": list(screenshots),
                "history": list(history),
                "auth_headers": auth_headers,
                "images": images,
            }
        )
        if self.on_predict is not None:
            self.on_predict(len(self.calls))
        idx = min(len(self.calls), len(self.script)) - 1
        item = self.script[idx]
        if isinstance(item, Exception):
            raise item
        return item


class RecordingOperator:
    MANUAL = None

    def __init__(self, on_execute: Optional[Callable[[Action], None]] = None):
        self.screenshots = 0
        self.executed: List[Action] = []
        self.closed = False
        self.on_execute = on_execute
        self.screenshot_error: Optional[Exception] = None
        self.execute_errors: List[Exception] = []

    def screenshot(self) -> ScreenshotResult:
        self.screenshots += 1
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return ScreenshotResult(image_bytes=f"frame-{self.screenshots}".encode(), scale_factor=1.0, width=1280, height=720)

    def execute(self, action: Action) -> ExecuteResult:
        if self.execute_errors:
            raise self.execute_errors.pop(0)
        self.executed.append(action)
        if self.on_execute is not None:
            self.on_execute(action)
        return ExecuteResult(action_type=action.action_type, start_x=1.0, start_y=2.0)

    def close(self) -> None:
        self.closed = True


SCREENSHOT_JPEG = b"\xff\xd8\xff\xe0fake-jpeg"

CDP_RESPONSES: Dict[str, Any] = {
    "Page.captureScreenshot": {"data": base64.b64encode(SCREENSHOT_JPEG).decode("utf-8")},
    "Page.getLayoutMetrics": {"cssLayoutViewport": {"clientWidth": 1280, "clientHeight": 720}},
    "Runtime.evaluate": {"result": {"value": 1}},
}


@pytest.fixture
def browser() -> FakeBrowser:
    b = FakeBrowser(dict(CDP_RESPONSES))
    b.context.new_page("https://example.com")
    return b


@pytest.fixture
def sleeps() -> List[float]:
    return []
