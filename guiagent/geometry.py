"""geometry.py - Box-string to device-pixel conversion and model image sizing."""

import math
import re

IMAGE_FACTOR = 28
MIN_PIXELS = 100 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_V1_5 = 16384 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_RATIO = 200

_BRACKETS = re.compile(r"[\[\]()]")


def parse_box_to_screen_coords(
    box_str: str | None, screen_width: float, screen_height: float
) -> tuple[float | None, float | None]:
    """Resolve a normalized box string like "[0.1,0.2,0.3,0.4]" to a screen point.

    Uses the first two numbers only. Returns (None, None) when the input is
    empty or does not hold two numbers.
    """
    if not box_str:
        return None, None
    try:
        parts = [p.strip() for p in _BRACKETS.sub("", str(box_str)).split(",")]
        coords = [float(p) for p in parts if p]
        if len(coords) < 2 or any(math.isnan(c) for c in coords[:2]):
            return None, None
        return coords[0] * screen_width, coords[1] * screen_height
    except (TypeError, ValueError):
        return None, None


def round_by_factor(number: float, factor: int) -> int:
    return round(number / factor) * factor


def ceil_by_factor(number: float, factor: int) -> int:
    return math.ceil(number / factor) * factor


def floor_by_factor(number: float, factor: int) -> int:
    return math.floor(number / factor) * factor


def smart_resize(
    height: int,
    width: int,
    factor: int = IMAGE_FACTOR,
    min_pixels: int = MIN_PIXELS,
    max_pixels: int = MAX_PIXELS_V1_5,
) -> tuple[int, int]:
    """Return the (height, width) the vision encoder sees for an image.

    Both sides are multiples of `factor`, the aspect ratio is capped at
    MAX_RATIO and the pixel count is kept within [min_pixels, max_pixels].
    """
    if height <= 0 or width <= 0:
        return factor, factor

    if max(height, width) / min(height, width) > MAX_RATIO:
        if height > width:
            height = width * MAX_RATIO
        else:
            width = height * MAX_RATIO

    h_bar = max(factor, round_by_factor(height, factor))
    w_bar = max(factor, round_by_factor(width, factor))
    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = max(factor, floor_by_factor(height / beta, factor))
        w_bar = max(factor, floor_by_factor(width / beta, factor))
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = ceil_by_factor(height * beta, factor)
        w_bar = ceil_by_factor(width * beta, factor)
    return h_bar, w_bar
