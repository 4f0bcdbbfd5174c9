"""Page geometry for placing one image on one page.

Coordinates use a top-left origin in PDF points; writers with a bottom-left
origin convert with ``PagePlacement.bottom_left_y``.
"""

import math
from dataclasses import dataclass

from .errors import ValidationError

AUTO = "auto"
PORTRAIT = "portrait"
LANDSCAPE = "landscape"

# (width, height) in points, portrait
PAGE_PRESETS: dict[str, tuple[float, float]] = {
    "a4": (595.28, 841.89),
    "letter": (612.0, 792.0),
}

ORIENTATIONS = (PORTRAIT, LANDSCAPE)


@dataclass(frozen=True)
class PagePlacement:
    page_width: float
    page_height: float
    x: float
    y: float
    draw_width: int
    draw_height: int

    @property
    def bottom_left_y(self) -> float:
        return self.page_height - self.y - self.draw_height


def normalize_page_size(page_size: str | None) -> str:
    value = (page_size or AUTO).strip().lower()
    if value != AUTO and value not in PAGE_PRESETS:
        allowed = ", ".join([AUTO, *PAGE_PRESETS])
        raise ValidationError(f"pageSize must be one of: {allowed}")
    return value


def normalize_orientation(orientation: str | None) -> str:
    value = (orientation or PORTRAIT).strip().lower()
    if value not in ORIENTATIONS:
        raise ValidationError("orientation must be 'portrait' or 'landscape'")
    return value


def _fit(value: float, limit: float) -> int:
    # Rounding must not push the drawn size past the available area.
    drawn = round(value)
    if drawn > limit:
        drawn = math.floor(limit)
    return max(1, drawn)


def compute_placement(
    page_size: str,
    orientation: str,
    margin: float,
    image_width: float,
    image_height: float,
) -> PagePlacement:
    page_size = normalize_page_size(page_size)
    orientation = normalize_orientation(orientation)
    if margin < 0:
        raise ValidationError("margin must be zero or positive")
    if image_width <= 0 or image_height <= 0:
        raise ValidationError("image dimensions must be positive")

    if page_size == AUTO:
        draw_w = max(1, round(image_width))
        draw_h = max(1, round(image_height))
        return PagePlacement(
            page_width=draw_w + margin * 2,
            page_height=draw_h + margin * 2,
            x=margin,
            y=margin,
            draw_width=draw_w,
            draw_height=draw_h,
        )

    page_w, page_h = PAGE_PRESETS[page_size]
    if orientation == LANDSCAPE:
        page_w, page_h = page_h, page_w
    avail_w = page_w - margin * 2
    avail_h = page_h - margin * 2
    scale = min(avail_w / image_width, avail_h / image_height, 1.0)
    draw_w = _fit(image_width * scale, avail_w)
    draw_h = _fit(image_height * scale, avail_h)
    return PagePlacement(
        page_width=page_w,
        page_height=page_h,
        x=max(0, round((page_w - draw_w) / 2)),
        y=max(0, round((page_h - draw_h) / 2)),
        draw_width=draw_w,
        draw_height=draw_h,
    )
