"""Burns captured field values into the original PDF.

Field rectangles are stored normalized to [0, 1] with a top-left origin;
PDF user space is bottom-left in points, so every rectangle goes through
``to_absolute_rect`` before drawing.
"""
from __future__ import annotations

import base64
import binascii
import io
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from PIL import Image
from pypdf import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

FONT_NAME = "Helvetica"
MIN_FONT_SIZE = 8
MAX_FONT_SIZE = 16
TEXT_WIDTH_RATIO = 0.9
IMAGE_PADDING = 4.0

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
JPEG_MAGIC = b"\xff\xd8\xff"


class EmbeddableField(Protocol):
    page: int
    x: float
    y: float
    width: float
    height: float
    value: str | None


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float


def to_absolute_rect(
    x: float,
    y: float,
    width: float,
    height: float,
    page_width: float,
    page_height: float,
) -> Rect:
    abs_width = width * page_width
    abs_height = height * page_height
    abs_x = x * page_width
    abs_y = page_height - y * page_height - abs_height
    return Rect(abs_x, abs_y, abs_width, abs_height)


def fit_font_size(text: str | None, box_width: float, font_name: str = FONT_NAME) -> int:
    """Largest size in [MIN_FONT_SIZE, MAX_FONT_SIZE] whose rendered width fits 90% of the box."""
    limit = TEXT_WIDTH_RATIO * (box_width or 0.0)
    for size in range(MAX_FONT_SIZE, MIN_FONT_SIZE - 1, -1):
        try:
            rendered = pdfmetrics.stringWidth(text or "", font_name, size)
        except (KeyError, ValueError, UnicodeError):
            return MIN_FONT_SIZE
        if rendered <= limit:
            return size
    return MIN_FONT_SIZE


def detect_image_type(data: bytes) -> str | None:
    if data.startswith(PNG_MAGIC):
        return "png"
    if data.startswith(JPEG_MAGIC):
        return "jpeg"
    return None


def decode_image_data_url(value: str) -> bytes | None:
    """Return raw PNG/JPEG bytes for a ``data:image/...;base64,`` value, else ``None``."""
    header, sep, encoded = value.partition(",")
    if not sep or ";base64" not in header.lower():
        return None
    try:
        raw = base64.b64decode(encoded.strip(), validate=False)
    except (binascii.Error, ValueError):
        return None
    return raw if detect_image_type(raw) else None


def is_image_value(value: str) -> bool:
    return value.lower().startswith("data:image/")


def validate_image_data_url(value: str) -> bytes:
    """Decode the data URL and fully load the pixels; raise ``ValueError`` when that fails."""
    raw = decode_image_data_url(value)
    if raw is None:
        raise ValueError("Image must be a PNG or JPEG data URL")
    try:
        with Image.open(io.BytesIO(raw)) as image:
            image.load()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Image data could not be decoded: {exc}") from exc
    return raw


class PdfFieldEmbedder:
    def __init__(self, *, image_padding: float = IMAGE_PADDING, font_name: str = FONT_NAME) -> None:
        self.image_padding = image_padding
        self.font_name = font_name

    def embed(self, pdf_bytes: bytes, fields: Iterable[EmbeddableField]) -> bytes:
        by_page: dict[int, list[EmbeddableField]] = defaultdict(list)
        for field in fields:
            if not (field.value or "").strip():
                continue
            by_page[int(field.page)].append(field)
        if not by_page:
            return pdf_bytes

        reader = PdfReader(io.BytesIO(pdf_bytes))
        page_count = len(reader.pages)
        for page_number in sorted(by_page):
            if page_number < 1 or page_number > page_count:
                logger.warning(
                    "Skipping %s field(s) on page %s: document has %s page(s)",
                    len(by_page[page_number]),
                    page_number,
                    page_count,
                )

        writer = PdfWriter(clone_from=reader)
        for index, page in enumerate(writer.pages, start=1):
            entries = by_page.get(index)
            if entries:
                overlay_page = self._render_overlay(page, entries)
                if overlay_page is not None:
                    page.merge_page(overlay_page)

        output = io.BytesIO()
        writer.write(output)
        return output.getvalue()

    def _render_overlay(self, page, fields: Sequence[EmbeddableField]):  # type: ignore[no-untyped-def]
        box = page.mediabox
        origin_x = float(box.left)
        origin_y = float(box.bottom)
        page_width = float(box.width)
        page_height = float(box.height)

        stream = io.BytesIO()
        overlay = canvas.Canvas(stream, pagesize=(origin_x + page_width, origin_y + page_height))
        drawn = 0
        for field in fields:
            rect = to_absolute_rect(
                float(field.x), float(field.y), float(field.width), float(field.height), page_width, page_height
            )
            rect = Rect(rect.x + origin_x, rect.y + origin_y, rect.width, rect.height)
            value = (field.value or "").strip()
            if is_image_value(value):
                if self._draw_image(overlay, rect, value):
                    drawn += 1
            else:
                self._draw_text(overlay, rect, value)
                drawn += 1
        if not drawn:
            return None
        overlay.save()
        stream.seek(0)
        return PdfReader(stream).pages[0]

    def _draw_image(self, overlay: canvas.Canvas, rect: Rect, value: str) -> bool:
        raw = decode_image_data_url(value)
        if raw is None:
            logger.warning("Skipping field with unsupported image payload")
            return False
        image = ImageReader(io.BytesIO(raw))
        image_width, image_height = image.getSize()
        available_width = max(rect.width - 2 * self.image_padding, 1.0)
        available_height = max(rect.height - 2 * self.image_padding, 1.0)
        scale = min(available_width / image_width, available_height / image_height)
        draw_width = image_width * scale
        draw_height = image_height * scale
        overlay.drawImage(
            image,
            rect.x + (rect.width - draw_width) / 2,
            rect.y + (rect.height - draw_height) / 2,
            width=draw_width,
            height=draw_height,
            mask="auto",
        )
        return True

    def _draw_text(self, overlay: canvas.Canvas, rect: Rect, value: str) -> None:
        size = fit_font_size(value, rect.width, self.font_name)
        ascent, descent = pdfmetrics.getAscentDescent(self.font_name, size)
        baseline = rect.y + rect.height / 2 - (ascent + descent) / 2
        overlay.setFont(self.font_name, size)
        overlay.drawCentredString(rect.x + rect.width / 2, baseline, value)
