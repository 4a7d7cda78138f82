"""
Simple-signature stamping using PyMuPDF (fitz).

Each signer gets a vertical (90 degree) two-line block in a strip along the
right margin of the LAST page:

    line 1: "<name> - <CPF/CNPJ>"     (font shrinks to fit the block)
    line 2: "Assinado em <timestamp>"

Block positions depend only on the signer index, never on what is already
on the page, so each signer can be stamped in a separate invocation onto
the output of the previous one. Rotated last pages are normalized first so
the strip lands on the right edge as displayed. Column 0 reserves a footer
at the bottom of the strip, drawn by signer 0 (logo + "Verifique em <url>").
When a column is full, blocks continue in the next column to the left.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set, Tuple

import fitz  # PyMuPDF

from app.utils.datetime_utils import format_display_datetime
from app.utils.formatting import format_national_id, strip_accents

logger = logging.getLogger(__name__)

# Fonts with Latin diacritics; installed in the container image
FONT_PATHS = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
]
FALLBACK_FONT = "helv"
TTF_FONT_NAME = "stampsans"

# Layout, in points
COLUMN_WIDTH = 24.0
RIGHT_MARGIN = 6.0
TOP_MARGIN = 20.0
BOTTOM_MARGIN = 20.0
BLOCK_HEIGHT = 170.0
FOOTER_HEIGHT = 200.0
BLOCK_PADDING = 6.0
LINE_1_BASELINE = 10.0  # distance from the column's left edge
LINE_2_BASELINE = 20.0
LOGO_SIZE = 20.0
MAX_COLUMNS = 4

NAME_FONT_SIZES = [7.0, 6.5, 6.0, 5.5, 5.0, 4.5]
DETAIL_FONT_SIZE = 5.5
FOOTER_FONT_SIZES = [5.5, 5.0, 4.5, 4.0]

TEXT_COLOR = (0.25, 0.25, 0.25)
FOOTER_COLOR = (0.45, 0.45, 0.45)

# Document keywords token recording who is already stamped on a file
STAMPED_SIGNER_PREFIX = "stamped-signer:"


class StampingError(Exception):
    """Stamping could not be applied."""
    pass


@dataclass
class StampSigner:
    name: str
    national_id: Optional[str]
    signed_at: datetime
    signer_id: Optional[str] = None


def _find_font() -> Optional[str]:
    for path in FONT_PATHS:
        if os.path.exists(path):
            return path
    return None


def _column_capacity(column: int, page_height: float) -> int:
    usable = page_height - TOP_MARGIN - BOTTOM_MARGIN
    if column == 0:
        usable -= FOOTER_HEIGHT
    return max(0, int(usable // BLOCK_HEIGHT))


def block_slot(signer_index: int, page_height: float) -> Tuple[int, int]:
    """(column, slot) for a signer index. Raises StampingError past the last column."""
    if signer_index < 0:
        raise StampingError(f"Invalid signer index {signer_index}")
    remaining = signer_index
    for column in range(MAX_COLUMNS):
        capacity = _column_capacity(column, page_height)
        if remaining < capacity:
            return column, remaining
        remaining -= capacity
    raise StampingError(f"No room on the last page for signer #{signer_index + 1}")


def _column_x0(page_rect: fitz.Rect, column: int) -> float:
    return page_rect.x1 - RIGHT_MARGIN - (column + 1) * COLUMN_WIDTH


def block_rect(signer_index: int, page_rect: fitz.Rect) -> fitz.Rect:
    """Area reserved for a signer's block, in page coordinates (y grows downward)."""
    column, slot = block_slot(signer_index, page_rect.height)
    x0 = _column_x0(page_rect, column)
    bottom = page_rect.y1 - BOTTOM_MARGIN - slot * BLOCK_HEIGHT
    if column == 0:
        bottom -= FOOTER_HEIGHT
    return fitz.Rect(x0, bottom - BLOCK_HEIGHT, x0 + COLUMN_WIDTH, bottom)


def footer_rect(page_rect: fitz.Rect) -> fitz.Rect:
    x0 = _column_x0(page_rect, 0)
    bottom = page_rect.y1 - BOTTOM_MARGIN
    return fitz.Rect(x0, bottom - FOOTER_HEIGHT, x0 + COLUMN_WIDTH, bottom)


def _keyword_signer_ids(doc: fitz.Document) -> Set[str]:
    keywords = (doc.metadata or {}).get("keywords") or ""
    return {
        token[len(STAMPED_SIGNER_PREFIX):]
        for token in keywords.split()
        if token.startswith(STAMPED_SIGNER_PREFIX)
    }


def _record_stamped_signer(doc: fitz.Document, signer_id: str) -> None:
    metadata = dict(doc.metadata or {})
    token = f"{STAMPED_SIGNER_PREFIX}{signer_id}"
    metadata["keywords"] = f"{metadata.get('keywords') or ''} {token}".strip()
    doc.set_metadata(metadata)


def stamped_signer_ids(pdf_bytes: bytes) -> Set[str]:
    """Ids of the signers whose stamp is already on this file."""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        raise StampingError(f"Cannot open PDF: {e}") from e
    try:
        return _keyword_signer_ids(doc)
    finally:
        doc.close()


class SimpleSignatureStamper:
    """Burns simple-signature blocks into the last page of a PDF."""

    def __init__(self, logo_path: Optional[str] = None):
        self.logo_path = logo_path
        self.font_path = _find_font()
        if self.font_path:
            self._font = fitz.Font(fontfile=self.font_path)
        else:
            logger.warning("No TTF font found for stamps, using Helvetica with accents stripped")
            self._font = fitz.Font(FALLBACK_FONT)

    def _prepare(self, text: str) -> str:
        return text if self.font_path else strip_accents(text)

    def _fit(self, text: str, sizes: List[float], max_length: float) -> Tuple[str, float]:
        """Largest size at which text fits; truncated at the smallest size otherwise."""
        for size in sizes:
            if self._font.text_length(text, fontsize=size) <= max_length:
                return text, size
        size = sizes[-1]
        while text and self._font.text_length(text + "...", fontsize=size) > max_length:
            text = text[:-1]
        return text.rstrip() + "...", size

    def _draw(self, page: fitz.Page, point: fitz.Point, text: str, size: float, color) -> None:
        kwargs = {"fontsize": size, "rotate": 90, "color": color}
        if self.font_path:
            kwargs.update(fontname=TTF_FONT_NAME, fontfile=self.font_path)
        else:
            kwargs.update(fontname=FALLBACK_FONT)
        page.insert_text(point, text, **kwargs)

    def stamp(
        self,
        pdf_bytes: bytes,
        signer_index: int,
        signer: StampSigner,
        validation_url: str,
    ) -> bytes:
        """
        Stamp one signer onto the last page and return the new PDF bytes.

        Raises:
            StampingError: unreadable PDF or no room left for this index
        """
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise StampingError(f"Cannot open PDF: {e}") from e

        try:
            if doc.page_count == 0:
                raise StampingError("PDF has no pages")
            page = doc[-1]
            if page.rotation:
                # insert_text works in unrotated space; bake the rotation into the content
                page.remove_rotation()
            page_rect = page.rect
            rect = block_rect(signer_index, page_rect)

            national_id = format_national_id(signer.national_id)
            line_1 = self._prepare(f"{signer.name} - {national_id}" if national_id else signer.name)
            line_2 = self._prepare(f"Assinado em {format_display_datetime(signer.signed_at)}")

            max_length = BLOCK_HEIGHT - 2 * BLOCK_PADDING
            line_1, name_size = self._fit(line_1, NAME_FONT_SIZES, max_length)
            line_2, detail_size = self._fit(line_2, [DETAIL_FONT_SIZE] + NAME_FONT_SIZES[-2:], max_length)

            start_y = rect.y1 - BLOCK_PADDING
            self._draw(page, fitz.Point(rect.x0 + LINE_1_BASELINE, start_y), line_1, name_size, TEXT_COLOR)
            self._draw(page, fitz.Point(rect.x0 + LINE_2_BASELINE, start_y), line_2, detail_size, TEXT_COLOR)

            if signer_index == 0:
                self._draw_footer(page, page_rect, validation_url)
            if signer.signer_id:
                _record_stamped_signer(doc, signer.signer_id)

            logger.info(f"Stamped signer #{signer_index + 1} at {rect} (name size {name_size})")
            return doc.tobytes(deflate=True)
        finally:
            doc.close()

    def _draw_footer(self, page: fitz.Page, page_rect: fitz.Rect, validation_url: str) -> None:
        rect = footer_rect(page_rect)
        text_start = rect.y1 - BLOCK_PADDING

        if self.logo_path and os.path.exists(self.logo_path):
            logo = fitz.Rect(
                rect.x0 + 2,
                rect.y1 - LOGO_SIZE - 2,
                rect.x0 + 2 + LOGO_SIZE,
                rect.y1 - 2,
            )
            try:
                page.insert_image(logo, filename=self.logo_path, rotate=90, keep_proportion=True)
                text_start = logo.y0 - BLOCK_PADDING
            except (RuntimeError, ValueError) as e:
                logger.warning(f"Stamp logo could not be inserted: {e}")

        max_length = text_start - rect.y0 - BLOCK_PADDING
        label, label_size = self._fit(self._prepare("Verifique em:"), FOOTER_FONT_SIZES, max_length)
        url, url_size = self._fit(validation_url, FOOTER_FONT_SIZES, max_length)
        self._draw(page, fitz.Point(rect.x0 + LINE_1_BASELINE, text_start), label, label_size, FOOTER_COLOR)
        self._draw(page, fitz.Point(rect.x0 + LINE_2_BASELINE, text_start), url, url_size, FOOTER_COLOR)


_stamper: Optional[SimpleSignatureStamper] = None


def get_stamper() -> SimpleSignatureStamper:
    """Get the stamper singleton."""
    global _stamper
    if _stamper is None:
        from app.config import get_settings
        _stamper = SimpleSignatureStamper(logo_path=get_settings().stamp_logo_path or None)
    return _stamper
