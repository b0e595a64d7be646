"""
screen_coords.py

Box-string -> device coordinate mapping.

The parser hands us boxes in normalized space ("[x1, y1, x2, y2]" with values
in 0..1, or a single point "[x, y]"). We take the box centre, scale it to the
captured frame's pixel size, and divide out the frame's scale factor so the
result lands in the surface's own (logical) coordinate space.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

_NUM_RE = re.compile(r"-?\d+(?:\.\d+)?")


def parse_box_numbers(box_str: str) -> List[float]:
    if not box_str:
        return []
    return [float(n) for n in _NUM_RE.findall(str(box_str))]


def parse_box_to_screen_coords(
    box_str: str,
    screen_width: float,
    screen_height: float,
) -> Tuple[Optional[float], Optional[float]]:
    """Centre of the box in screenshot pixels, rounded to 2 decimals.

    Returns (None, None) when the string holds fewer than two numbers.
    """
    nums = parse_box_numbers(box_str)
    if len(nums) < 2:
        return None, None
    x1, y1 = nums[0], nums[1]
    x2 = nums[2] if len(nums) >= 4 else x1
    y2 = nums[3] if len(nums) >= 4 else y1
    x = round(((x1 + x2) / 2.0) * float(screen_width), 2)
    y = round(((y1 + y2) / 2.0) * float(screen_height), 2)
    return x, y


def box_to_device_point(
    box_str: str,
    screen_width: float,
    screen_height: float,
    scale_factor: float = 1.0,
) -> Tuple[Optional[float], Optional[float]]:
    x, y = parse_box_to_screen_coords(box_str, screen_width, screen_height)
    if x is None or y is None:
        return None, None
    sf = float(scale_factor) if scale_factor and scale_factor > 0 else 1.0
    return x / sf, y / sf
