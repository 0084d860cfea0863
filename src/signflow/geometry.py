"""Coordinate transforms between display, document and PDF page space.

Three spaces are involved:

* **display space** — pixels in the browser at the current zoom ``scale``;
* **document space** — PDF points from the top-left of the page at scale
  1.0, which is what gets persisted;
* **page space** — PDF points from the bottom-left of the page box, which
  is what a PDF renderer draws in.

Everything here is pure.
"""

import math
from typing import Union

from pydantic import BaseModel


class Point(BaseModel):
    x: float
    y: float


class Box(BaseModel):
    """An axis-aligned rectangle: origin corner plus size."""

    x: float
    y: float
    width: float
    height: float


def _check_scale(scale: float) -> None:
    if not isinstance(scale, (int, float)) or not math.isfinite(scale) or scale <= 0:
        raise ValueError(f"scale must be a positive finite number, got {scale!r}")


def to_display(box: Box, scale: float) -> Box:
    """Project a document-space box into display space at ``scale``.

    Raises:
        ValueError: If ``scale`` is not strictly positive.
    """
    _check_scale(scale)
    return Box(
        x=box.x * scale,
        y=box.y * scale,
        width=box.width * scale,
        height=box.height * scale,
    )


def to_document_space(
    shape: Union[Box, Point], scale: float
) -> Union[Box, Point]:
    """Normalize a display-space box or point back into document space.

    ``to_document_space(to_display(b, s), s)`` equals ``b`` up to
    floating-point rounding for every ``s > 0``.

    Raises:
        ValueError: If ``scale`` is not strictly positive.
    """
    _check_scale(scale)
    if isinstance(shape, Point):
        return Point(x=shape.x / scale, y=shape.y / scale)
    return Box(
        x=shape.x / scale,
        y=shape.y / scale,
        width=shape.width / scale,
        height=shape.height / scale,
    )


def to_page_space(
    box: Box,
    page_height: float,
    origin_x: float = 0.0,
    origin_y: float = 0.0,
) -> Box:
    """Flip a top-left document box into bottom-left PDF page coordinates.

    Args:
        box: Document-space box.
        page_height: Height of the page box in points.
        origin_x: Left edge of the page box (non-zero for offset media boxes).
        origin_y: Bottom edge of the page box.

    Returns:
        Box whose ``y`` is the bottom edge in page space:
        ``page_height - box.y - box.height``.
    """
    return Box(
        x=origin_x + box.x,
        y=origin_y + page_height - box.y - box.height,
        width=box.width,
        height=box.height,
    )
