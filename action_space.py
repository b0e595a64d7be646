"""
action_space.py

Shared types for the agent loop and the operators:
- ActionType / Action: the parsed model prediction
- ScreenshotResult / ExecuteResult: operator outputs
- RetryPolicy: per-phase retry budget
- error taxonomy
- MANUAL: the action-space lines embedded in the system prompt
- parse_prediction: "Thought: ... Action: click(start_box='(x,y)')" -> Action
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from screen_coords import parse_box_numbers


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class AgentError(Exception):
    pass


class TransientPhaseError(AgentError):
    def __init__(self, phase: str, message: str):
        super().__init__(f"[{phase}] {message}")
        self.phase = phase


class FatalRunError(AgentError):
    def __init__(self, phase: str, cause: Optional[BaseException]):
        super().__init__(f"{phase} failed after retries: {cause}")
        self.phase = phase
        self.cause = cause


class OperatorConnectionError(AgentError):
    pass


class UnsupportedActionError(AgentError):
    pass


# -----------------------------------------------------------------------------
# Action model
# -----------------------------------------------------------------------------
class ActionType(str, Enum):
    CLICK = "click"
    DOUBLE_CLICK = "double_click"
    RIGHT_CLICK = "right_click"
    TYPE = "type"
    HOTKEY = "hotkey"
    PRESS = "press"
    RELEASE = "release"
    SCROLL = "scroll"
    DRAG = "drag"
    NAVIGATE = "navigate"
    NAVIGATE_BACK = "navigate_back"
    WAIT = "wait"
    FINISHED = "finished"
    CALL_USER = "call_user"
    ERROR_ENV = "error_env"
    USER_STOP = "user_stop"


TERMINAL_ACTIONS = frozenset(
    {ActionType.FINISHED, ActionType.CALL_USER, ActionType.USER_STOP, ActionType.ERROR_ENV}
)

# Actions that never touch the surface.
PASSIVE_ACTIONS = TERMINAL_ACTIONS | {ActionType.WAIT}

ACTION_ALIASES: Dict[str, str] = {
    "left_single": "click",
    "left_click": "click",
    "left_double": "double_click",
    "right_single": "right_click",
    "press_key": "press",
    "release_key": "release",
    "goto": "navigate",
    "back": "navigate_back",
}


class Action(BaseModel):
    """One parsed prediction. Unknown action types are kept as plain strings so
    operators can log and skip them."""

    model_config = ConfigDict(frozen=True)

    action_type: str
    action_inputs: Dict[str, str] = Field(default_factory=dict)
    thought: str = ""
    reflection: str = ""
    raw: str = ""

    @field_validator("action_type", mode="before")
    @classmethod
    def _canonical_type(cls, v: Any) -> str:
        if isinstance(v, ActionType):
            return v.value
        name = str(v or "").strip().lower()
        return ACTION_ALIASES.get(name, name)

    @property
    def kind(self) -> Optional[ActionType]:
        try:
            return ActionType(self.action_type)
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_ACTIONS

    def input(self, name: str) -> str:
        return str(self.action_inputs.get(name) or "")


# -----------------------------------------------------------------------------
# Operator outputs
# -----------------------------------------------------------------------------
@dataclass
class ScreenshotResult:
    image_bytes: bytes
    scale_factor: float = 1.0
    width: int = 0
    height: int = 0

    @property
    def base64(self) -> str:
        return base64.b64encode(self.image_bytes).decode("utf-8")


@dataclass
class ExecuteResult:
    action_type: str
    start_x: Optional[float] = None
    start_y: Optional[float] = None
    events: List[Any] = field(default_factory=list)


class Operator(Protocol):
    def screenshot(self) -> ScreenshotResult: ...

    def execute(self, action: Action) -> ExecuteResult: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    model: int = 5
    screenshot: int = 5
    execute: int = 1

    def for_phase(self, phase: str) -> int:
        return int(getattr(self, phase, 0) or 0)


# -----------------------------------------------------------------------------
# Action space manual
# -----------------------------------------------------------------------------
MANUAL: Dict[str, List[str]] = {
    "ACTION_SPACES": [
        "click(start_box='[x1, y1, x2, y2]')",
        "left_double(start_box='[x1, y1, x2, y2]')",
        "right_single(start_box='[x1, y1, x2, y2]')",
        "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
        "hotkey(key='')",
        "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
        "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
        "wait() #Sleep for 5s and take a screenshot to check for any changes.",
        "finished()",
        "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
    ],
}

BROWSER_MANUAL: Dict[str, List[str]] = {
    "ACTION_SPACES": MANUAL["ACTION_SPACES"][:7]
    + [
        "navigate(content='url') #Open the url in the current page.",
        "navigate_back() #Go back to the previous page.",
    ]
    + MANUAL["ACTION_SPACES"][7:],
}


# -----------------------------------------------------------------------------
# Prediction parser
# -----------------------------------------------------------------------------
_BOX_KEYS = {"start_box", "end_box"}
_CALL_RE = re.compile(r"^\s*([A-Za-z_][\w]*)\s*\((.*)\)\s*$", re.DOTALL)
_ARG_RE = re.compile(r"""(\w+)\s*=\s*(?:'((?:[^'\\]|\\.)*)'|"((?:[^"\\]|\\.)*)")""", re.DOTALL)


def _section(text: str, label: str, stops: Tuple[str, ...]) -> str:
    m = re.search(rf"{label}:\s*(.*)", text, flags=re.DOTALL | re.IGNORECASE)
    if not m:
        return ""
    body = m.group(1)
    for stop in stops:
        idx = body.find(f"{stop}:")
        if idx != -1:
            body = body[:idx]
    return body.strip()


def normalize_box(box: str, factor: float = 1000.0) -> str:
    """Model box in 0..factor space -> '[x1, y1, x2, y2]' in 0..1."""
    nums = parse_box_numbers(box)
    if len(nums) < 2:
        return ""
    if len(nums) < 4:
        nums = [nums[0], nums[1], nums[0], nums[1]]
    vals = [round(n / float(factor), 4) for n in nums[:4]]
    return "[" + ", ".join(repr(v) for v in vals) + "]"


def parse_action_call(call: str, factor: float = 1000.0) -> Optional[Tuple[str, Dict[str, str]]]:
    m = _CALL_RE.match(call or "")
    if not m:
        return None
    name = m.group(1)
    inputs: Dict[str, str] = {}
    for am in _ARG_RE.finditer(m.group(2)):
        key = am.group(1)
        raw = am.group(2) if am.group(2) is not None else (am.group(3) or "")
        val = raw.replace("\\'", "'").replace('\\"', '"')
        if key in ("start_point", "point"):
            key = "start_box"
        elif key == "end_point":
            key = "end_box"
        if key in _BOX_KEYS:
            val = normalize_box(val, factor)
        inputs[key] = val
    return name, inputs


def parse_prediction(text: str, factor: float = 1000.0) -> Optional[Action]:
    """Parse one model prediction. Returns None for malformed output."""
    if not text or not text.strip():
        return None

    thought = _section(text, "Thought", ("Action", "Reflection"))
    reflection = _section(text, "Reflection", ("Action", "Thought"))
    action_part = _section(text, "Action", ())
    if not action_part:
        action_part = text.strip()

    # Only the first action line is honoured.
    first = action_part.strip().split("\n\n")[0].strip()
    parsed = parse_action_call(first, factor)
    if not parsed:
        return None

    name, inputs = parsed
    return Action(
        action_type=name,
        action_inputs=inputs,
        thought=thought,
        reflection=reflection,
        raw=text,
    )
