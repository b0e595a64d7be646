"""
key_defs.py

Key name -> CDP Input.dispatchKeyEvent parameters.

Each entry carries the DOM `key`, the DOM `code`, the Windows virtual key code
and, for modifiers, the CDP modifier bit (Alt=1, Ctrl=2, Meta=4, Shift=8).
On macOS "ctrl"/"control" resolve to Meta so model-issued ctrl shortcuts behave
like Command shortcuts.
"""

from __future__ import annotations

import platform
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

IS_MAC = platform.system().lower() == "darwin"

MOD_ALT = 1
MOD_CTRL = 2
MOD_META = 4
MOD_SHIFT = 8


@dataclass(frozen=True)
class KeyDef:
    key: str
    code: str
    key_code: int
    is_modifier: bool = False
    modifier_bit: int = 0


_META = KeyDef("Meta", "MetaLeft", 91, True, MOD_META)
_CONTROL = KeyDef("Control", "ControlLeft", 17, True, MOD_CTRL)


def build_key_defs(is_mac: bool = IS_MAC) -> Dict[str, KeyDef]:
    ctrl = _META if is_mac else _CONTROL
    defs: Dict[str, KeyDef] = {
        # Modifiers
        "shift": KeyDef("Shift", "ShiftLeft", 16, True, MOD_SHIFT),
        "alt": KeyDef("Alt", "AltLeft", 18, True, MOD_ALT),
        "option": KeyDef("Alt", "AltLeft", 18, True, MOD_ALT),
        "control": ctrl,
        "ctrl": ctrl,
        "cmd": _META,
        "command": _META,
        "meta": _META,
        "win": _META,
        # Navigation / editing
        "enter": KeyDef("Enter", "Enter", 13),
        "return": KeyDef("Enter", "Enter", 13),
        "tab": KeyDef("Tab", "Tab", 9),
        "escape": KeyDef("Escape", "Escape", 27),
        "esc": KeyDef("Escape", "Escape", 27),
        "backspace": KeyDef("Backspace", "Backspace", 8),
        "delete": KeyDef("Delete", "Delete", 46),
        "space": KeyDef(" ", "Space", 32),
        "insert": KeyDef("Insert", "Insert", 45),
        "home": KeyDef("Home", "Home", 36),
        "end": KeyDef("End", "End", 35),
        "pageup": KeyDef("PageUp", "PageUp", 33),
        "pagedown": KeyDef("PageDown", "PageDown", 34),
        "capslock": KeyDef("CapsLock", "CapsLock", 20),
        # Arrows
        "up": KeyDef("ArrowUp", "ArrowUp", 38),
        "down": KeyDef("ArrowDown", "ArrowDown", 40),
        "left": KeyDef("ArrowLeft", "ArrowLeft", 37),
        "right": KeyDef("ArrowRight", "ArrowRight", 39),
        "arrowup": KeyDef("ArrowUp", "ArrowUp", 38),
        "arrowdown": KeyDef("ArrowDown", "ArrowDown", 40),
        "arrowleft": KeyDef("ArrowLeft", "ArrowLeft", 37),
        "arrowright": KeyDef("ArrowRight", "ArrowRight", 39),
        # Punctuation
        ",": KeyDef(",", "Comma", 188),
        "comma": KeyDef(",", "Comma", 188),
        ".": KeyDef(".", "Period", 190),
        "period": KeyDef(".", "Period", 190),
        "/": KeyDef("/", "Slash", 191),
        "slash": KeyDef("/", "Slash", 191),
        "\\": KeyDef("\\", "Backslash", 220),
        "backslash": KeyDef("\\", "Backslash", 220),
        "-": KeyDef("-", "Minus", 189),
        "minus": KeyDef("-", "Minus", 189),
        "=": KeyDef("=", "Equal", 187),
        "equal": KeyDef("=", "Equal", 187),
        "[": KeyDef("[", "BracketLeft", 219),
        "]": KeyDef("]", "BracketRight", 221),
        ";": KeyDef(";", "Semicolon", 186),
        "semicolon": KeyDef(";", "Semicolon", 186),
        "'": KeyDef("'", "Quote", 222),
        "quote": KeyDef("'", "Quote", 222),
        "`": KeyDef("`", "Backquote", 192),
        "backquote": KeyDef("`", "Backquote", 192),
    }

    # F1..F12 -> 112..123
    for i in range(1, 13):
        defs[f"f{i}"] = KeyDef(f"F{i}", f"F{i}", 111 + i)

    # a..z -> 65..90
    for i, ch in enumerate("abcdefghijklmnopqrstuvwxyz"):
        defs[ch] = KeyDef(ch, f"Key{ch.upper()}", 65 + i)

    # 0..9 -> 48..57
    for i in range(10):
        defs[str(i)] = KeyDef(str(i), f"Digit{i}", 48 + i)

    return defs


KEY_DEFS: Dict[str, KeyDef] = build_key_defs(IS_MAC)

# Meta+<letter> shortcuts the host should route as editing commands on macOS.
MAC_SHORTCUT_COMMANDS: Dict[str, str] = {
    "Meta+a": "selectAll",
    "Meta+c": "copy",
    "Meta+x": "cut",
    "Meta+v": "paste",
    "Meta+z": "undo",
    "Meta+y": "redo",
    "Meta+Shift+z": "redo",
}

_MULTI_WORD_KEYS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bpage\s+down\b", re.IGNORECASE), "pagedown"),
    (re.compile(r"\bpage\s+up\b", re.IGNORECASE), "pageup"),
    (re.compile(r"\bcaps\s*lock\b", re.IGNORECASE), "capslock"),
    (re.compile(r"\bscroll\s*lock\b", re.IGNORECASE), "scrolllock"),
    (re.compile(r"\bnum\s*lock\b", re.IGNORECASE), "numlock"),
    (re.compile(r"\bprint\s*screen\b", re.IGNORECASE), "printscreen"),
    (re.compile(r"\bcontext\s*menu\b", re.IGNORECASE), "contextmenu"),
]

_SPLIT_RE = re.compile(r"[\s+]+")


def normalize_key_phrase(key_str: str) -> str:
    """'page down' -> 'pagedown', so whitespace can act as a separator."""
    s = key_str or ""
    for pattern, repl in _MULTI_WORD_KEYS:
        s = pattern.sub(repl, s)
    return s


def split_keys(key_str: str) -> List[str]:
    return [k for k in _SPLIT_RE.split(key_str or "") if k]


def resolve_keys(
    key_str: str,
    defs: Dict[str, KeyDef] = KEY_DEFS,
) -> Tuple[List[KeyDef], List[str]]:
    """Resolve a hotkey phrase into (known defs, unknown tokens)."""
    known: List[KeyDef] = []
    unknown: List[str] = []
    for token in split_keys(normalize_key_phrase(key_str)):
        d = defs.get(token.lower())
        if d is None:
            unknown.append(token)
            continue
        known.append(d)
    return known, unknown


def modifier_mask(keys: List[KeyDef]) -> int:
    mask = 0
    for k in keys:
        if k.is_modifier:
            mask |= k.modifier_bit
    return mask


_MODIFIER_ORDER = {"Control": 0, "Alt": 1, "Meta": 2, "Shift": 3}


def shortcut_command(keys: List[KeyDef]) -> str:
    """Look up a macOS editing command; modifiers are matched in Control, Alt, Meta, Shift order."""
    mods = sorted((k for k in keys if k.is_modifier), key=lambda k: _MODIFIER_ORDER.get(k.key, len(_MODIFIER_ORDER)))
    rest = [k for k in keys if not k.is_modifier]
    return MAC_SHORTCUT_COMMANDS.get("+".join(k.key for k in mods + rest), "")
