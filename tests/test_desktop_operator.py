import pytest

try:
    import desktop_operator
    from pynput.keyboard import Key
except Exception as e:  # no display / no input backend on this machine
    pytest.skip(f"desktop input backend unavailable: {e}", allow_module_level=True)

from PIL import Image

from action_space import Action, ScreenshotResult
from desktop_operator import DesktopCapture, DesktopInputEngine, LocalDesktopOperator
from overlay import OverlayController


class FakeMouse:
    def __init__(self, size=(1280, 720)):
        self.calls = []
        self._size = size

    def size(self):
        return self._size

    def __getattr__(self, name):
        def _record(*args, **kwargs):
            self.calls.append((name, args, kwargs))

        return _record


class FakeKeyboard:
    def __init__(self):
        self.calls = []

    def press(self, k):
        self.calls.append(("press", k))

    def release(self, k):
        self.calls.append(("release", k))

    def type(self, text):
        self.calls.append(("type", text))


class FakeClipboard:
    def __init__(self, current="previous"):
        self.value = current
        self.history = []

    def paste(self):
        return self.value

    def copy(self, text):
        self.value = text
        self.history.append(text)


class FakeScreen:
    def __init__(self, logical, captured):
        self.logical = logical
        self.captured = captured

    def size(self):
        return self.logical

    def screenshot(self):
        return Image.new("RGB", self.captured, "white")


def act(action_type, **inputs):
    return Action(action_type=action_type, action_inputs=inputs)


@pytest.fixture
def engine(sleeps):
    return DesktopInputEngine(mouse=FakeMouse(), keyboard=FakeKeyboard(), clipboard=FakeClipboard(), use_paste=False, sleep=sleeps.append)


def test_click_divides_out_scale_factor(engine):
    retina = ScreenshotResult(b"", scale_factor=2.0, width=2560, height=1440)
    res = engine.execute(act("click", start_box="[0.5, 0.5, 0.5, 0.5]"), screen=retina)
    assert (res.start_x, res.start_y) == (640.0, 360.0)
    assert engine.mouse.calls[0] == ("moveTo", (640.0, 360.0), {})
    name, args, kwargs = engine.mouse.calls[1]
    assert name == "click"
    assert kwargs["button"] == "left" and kwargs["clicks"] == 1


def test_without_screenshot_uses_logical_screen_size(engine):
    res = engine.execute(act("right_click", start_box="[0.25, 0.5]"))
    assert (res.start_x, res.start_y) == (320.0, 360.0)
    assert engine.mouse.calls[1][2]["button"] == "right"


def test_type_ascii_then_enter(engine, sleeps):
    engine.execute(act("type", content="openrouter.ai\\n"))
    assert engine.kb.calls == [("type", "openrouter.ai"), ("press", Key.enter), ("release", Key.enter)]


def test_type_non_ascii_uses_clipboard_and_restores(engine):
    engine.execute(act("type", content="héllo"))
    assert engine.clipboard.history == ["héllo", "previous"]
    assert ("press", "v") in engine.kb.calls
    assert not any(c[0] == "type" for c in engine.kb.calls)


def test_hotkey_presses_modifiers_first_and_releases_in_reverse(engine):
    engine.execute(act("hotkey", key="ctrl+shift+t"))
    assert engine.kb.calls == [
        ("press", Key.ctrl),
        ("press", Key.shift),
        ("press", "t"),
        ("release", "t"),
        ("release", Key.shift),
        ("release", Key.ctrl),
    ]


def test_scroll_moves_to_box_then_wheels(engine):
    engine.execute(act("scroll", start_box="[0.5, 0.5]", direction="down"))
    names = [c[0] for c in engine.mouse.calls]
    assert names == ["moveTo", "scroll"]
    assert engine.mouse.calls[1][1] == (-5,)


def test_drag_uses_mouse_down_and_up(engine):
    engine.execute(act("drag", start_box="[0.0, 0.0]", end_box="[1.0, 1.0]"))
    names = [c[0] for c in engine.mouse.calls]
    assert names[:2] == ["moveTo", "mouseDown"]
    assert names[-1] == "mouseUp"
    assert names.count("moveTo") == 11


@pytest.mark.parametrize(
    "action",
    [act("click"), act("type", content=""), act("hotkey"), act("scroll", direction="diagonal"), act("navigate", content="x.com")],
)
def test_invalid_actions_touch_nothing(engine, action):
    res = engine.execute(action)
    assert engine.mouse.calls == []
    assert engine.kb.calls == []
    assert res.events == []


def test_capture_reports_scale_factor():
    cap = DesktopCapture(screen=FakeScreen((1440, 900), (2880, 1800)))
    shot = cap.capture()
    assert (shot.width, shot.height, shot.scale_factor) == (2880, 1800, 2.0)
    assert shot.image_bytes[:2] == b"\xff\xd8"


def test_capture_resizes_to_override_scale():
    cap = DesktopCapture(scale_factor=1.0, screen=FakeScreen((1440, 900), (2880, 1800)))
    shot = cap.capture()
    assert (shot.width, shot.height, shot.scale_factor) == (1440, 900, 1.0)


def test_operator_hides_overlays_around_interactive_actions(sleeps):
    depth_seen = []
    overlays = OverlayController(sleep=lambda s: None)
    engine = DesktopInputEngine(mouse=FakeMouse(), keyboard=FakeKeyboard(), clipboard=FakeClipboard(), use_paste=False, sleep=lambda s: None)
    engine.kb.type = lambda text: depth_seen.append(overlays.depth)
    op = LocalDesktopOperator(
        overlays=overlays,
        capture=DesktopCapture(screen=FakeScreen((1280, 720), (1280, 720))),
        engine=engine,
        sleep=sleeps.append,
    )

    op.screenshot()
    op.execute(act("type", content="abc"))
    assert depth_seen == [1]
    assert sleeps == [0.1]

    op.execute(act("wait"))
    assert overlays.depth == 0
    assert sleeps == [0.1]


def test_unknown_keys_are_skipped(engine):
    engine.execute(act("hotkey", key="ctrl+hyper+c"))
    assert engine.kb.calls == [("press", Key.ctrl), ("press", "c"), ("release", "c"), ("release", Key.ctrl)]


def test_type_real_newline_presses_enter(engine):
    engine.execute(act("type", content="openrouter.ai\n"))
    assert engine.kb.calls == [("type", "openrouter.ai"), ("press", Key.enter), ("release", Key.enter)]
