"""Per-field-type rendering onto a reportlab overlay canvas.

Each ``FieldType`` maps to exactly one renderer. A renderer receives the
canvas, the field and the field's box already converted to page space
(bottom-left origin), and draws the field's value into that box.

Image payloads that fail to decode never abort a render: the raw value is
drawn as monospace text instead.
"""

import base64
import binascii
import logging
from io import BytesIO
from typing import Callable

from PIL import Image
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen.canvas import Canvas

from .geometry import Box
from .models import FieldType, SignatureField

logger = logging.getLogger("signflow.render")

Renderer = Callable[[Canvas, SignatureField, Box], None]

TEXT_FONT = "Helvetica"
MONO_FONT = "Courier"
CHECK_FONT = "ZapfDingbats"
CHECK_GLYPH = "4"  # ✔ in ZapfDingbats
CHECKED = "checked"

MAX_FONT_SIZE = 12.0
MIN_FONT_SIZE = 6.0
PADDING = 2.0
# longest run that can fit across a page at the minimum font size
MAX_LINE_CHARS = 500


class ImageDecodeError(ValueError):
    """A data URL did not contain a decodable raster image."""


def decode_data_url(value: str) -> Image.Image:
    """Decode a ``data:image/...;base64,`` URL into a loaded PIL image.

    Raises:
        ImageDecodeError: If the payload is not a valid base64 image.
    """
    header, sep, encoded = value.partition(",")
    if not sep or not header.startswith("data:image") or ";base64" not in header:
        raise ImageDecodeError("not a base64 image data URL")
    try:
        raw = base64.b64decode(encoded, validate=True)
        image = Image.open(BytesIO(raw))
        image.load()
    except (binascii.Error, ValueError, OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(str(exc)) from exc
    return image


def is_image_value(value: str) -> bool:
    return value.startswith("data:image")


def font_size_for(box: Box) -> float:
    return max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, box.height * 0.6))


def fit_text(text: str, font: str, size: float, max_width: float) -> str:
    """Truncate ``text`` so it fits in ``max_width`` points.

    The cut point is found by bisection over at most ``MAX_LINE_CHARS``
    characters, so long raw payloads stay cheap to measure.
    """
    text = text[:MAX_LINE_CHARS]
    if stringWidth(text, font, size) <= max_width:
        return text
    lo, hi = 0, len(text) - 1
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if stringWidth(text[:mid], font, size) <= max_width:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo]


def draw_text(
    c: Canvas,
    text: str,
    box: Box,
    font: str = TEXT_FONT,
    color=colors.black,
) -> None:
    """Left-aligned, vertically centered single line inside ``box``."""
    size = font_size_for(box)
    fitted = fit_text(text, font, size, box.width - 2 * PADDING)
    if not fitted:
        return
    c.setFillColor(color)
    c.setFont(font, size)
    baseline = box.y + box.height / 2 - size * 0.35
    c.drawString(box.x + PADDING, baseline, fitted)


def draw_image_or_text(c: Canvas, field: SignatureField, box: Box, prefix: str = "") -> None:
    """Embed an image payload, falling back to monospace text."""
    value = field.value or ""
    if is_image_value(value):
        try:
            image = decode_data_url(value)
            c.drawImage(
                ImageReader(image),
                box.x,
                box.y,
                width=box.width,
                height=box.height,
                mask="auto",
                preserveAspectRatio=True,
                anchor="c",
            )
        except Exception as exc:
            # Pillow and reportlab raise outside any common base class
            logger.warning(
                "Field %s has an undecodable image, drawing raw value: %s",
                field.field_id[:8],
                exc,
            )
            draw_text(c, value, box, font=MONO_FONT)
        return
    draw_text(c, prefix + value, box, font=MONO_FONT)


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------

def render_signature(c: Canvas, field: SignatureField, box: Box) -> None:
    draw_image_or_text(c, field, box)


def render_witness(c: Canvas, field: SignatureField, box: Box) -> None:
    draw_image_or_text(c, field, box, prefix="Witness: ")


def render_text(c: Canvas, field: SignatureField, box: Box) -> None:
    draw_text(c, field.value or "", box)


def render_date(c: Canvas, field: SignatureField, box: Box) -> None:
    draw_text(c, field.value or "", box, color=colors.navy)


def render_checkbox(c: Canvas, field: SignatureField, box: Box) -> None:
    if field.value != CHECKED:
        return
    size = min(box.width, box.height) * 0.8
    glyph_width = stringWidth(CHECK_GLYPH, CHECK_FONT, size)
    c.setFillColor(colors.black)
    c.setFont(CHECK_FONT, size)
    c.drawString(
        box.x + (box.width - glyph_width) / 2,
        box.y + (box.height - size) / 2 + size * 0.15,
        CHECK_GLYPH,
    )


RENDERERS: dict[FieldType, Renderer] = {
    FieldType.SIGNATURE: render_signature,
    FieldType.INITIALS: render_signature,
    FieldType.STAMP: render_signature,
    FieldType.WITNESS: render_witness,
    FieldType.NAME: render_text,
    FieldType.TEXT: render_text,
    FieldType.INPUT: render_text,
    FieldType.DATE: render_date,
    FieldType.CHECKBOX: render_checkbox,
}

_unhandled = set(FieldType) - set(RENDERERS)
if _unhandled:
    raise RuntimeError(
        "No renderer for field type(s): " + ", ".join(sorted(t.value for t in _unhandled))
    )


def render_field(c: Canvas, field: SignatureField, box: Box) -> None:
    """Draw one field with the renderer registered for its type."""
    c.saveState()
    try:
        RENDERERS[field.type](c, field, box)
    finally:
        c.restoreState()
