"""
Low-level PDF utilities for positional placement.

Mapped fields linked to a native AcroForm field are filled through the form,
which is then flattened into the page content. Every other field is drawn
inside its denormalized bounding box on an overlay page that is merged onto
the source page. Text shrinks to fit the box width.
"""

from __future__ import annotations

import datetime as dt
import io
import logging
from typing import Dict, Iterable, List, Optional

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .exceptions import RenderError
from .models import Field

logger = logging.getLogger(__name__)

DEFAULT_FONT_SIZE = 11
MIN_FONT_SIZE = 6
FONT_STEP = 0.5
TEXT_PADDING = 2
TEXT_FONT = "Helvetica"
CHECK_FONT = "ZapfDingbats"
CHECK_GLYPH = "4"  # check mark in ZapfDingbats
SIGNATURE_COLOR = (0, 0.5, 0)


def format_field_value(field: Field, value, date_format: str = "%d/%m/%Y") -> str:
    """Text drawn for a field; dates given as YYYY-MM-DD use `date_format`."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "✓" if value else ""
    text = str(value).strip()
    if field.type == "date" and text:
        text = _format_iso_date(text, date_format)
    return text


def _format_iso_date(value: str, date_format: str) -> str:
    if len(value) < 10 or value[4] != "-":
        return value
    try:
        return dt.date.fromisoformat(value[:10]).strftime(date_format)
    except ValueError:
        return value


def fit_font_size(text: str, max_width: float, font_size: float, font: str = TEXT_FONT) -> float:
    size = font_size
    while stringWidth(text, font, size) > max_width and size > MIN_FONT_SIZE:
        size -= FONT_STEP
    return max(size, MIN_FONT_SIZE)


def fill_positional(
    source_bytes: bytes,
    fields: Iterable[Field],
    record: Dict[str, object],
    date_format: str = "%d/%m/%Y",
) -> bytes:
    """
    Return a copy of `source_bytes` with every mapped field's value placed on
    its page. Keys missing from `record` render blank.
    """
    try:
        reader = PdfReader(io.BytesIO(source_bytes), strict=False)
        writer = PdfWriter(clone_from=reader)
    except (PdfReadError, ValueError) as exc:
        raise RenderError(f"Could not read PDF source: {exc}") from exc

    fields = list(fields)
    native_fields = reader.get_fields() or {}
    form_values: Dict[str, Optional[str]] = {}
    drawn: List[Field] = []

    for field in fields:
        if field.page >= len(writer.pages):
            logger.warning("Field %s references page %d; source has %d", field.id, field.page, len(writer.pages))
            continue
        value = record.get(field.data_key)
        native = native_fields.get(field.pdf_field_name) if field.pdf_field_name else None
        if native is not None:
            form_values[field.pdf_field_name] = _form_value(field, native, value, date_format)
        else:
            drawn.append(field)

    if form_values:
        _flatten_form(writer, native_fields, form_values)
        logger.info("Filled %d native form fields", len(form_values))

    if drawn:
        overlay = PdfReader(io.BytesIO(_draw_overlay(writer.pages, drawn, record, date_format)))
        for index, page in enumerate(writer.pages):
            page.merge_page(overlay.pages[index])

    with io.BytesIO() as buffer:
        writer.write(buffer)
        return buffer.getvalue()


def checkbox_on_state(native) -> str:
    """Name of the checked appearance state of a native checkbox."""
    for state in native.get("/_States_", []):
        if state != "/Off":
            return str(state)
    return "/Yes"


def _form_value(field: Field, native, value, date_format: str) -> str:
    if field.type == "checkbox" or native.get("/FT") == "/Btn":
        return checkbox_on_state(native) if value is True else "/Off"
    return format_field_value(field, value, date_format)


def _flatten_form(writer: PdfWriter, native_fields, form_values: Dict[str, Optional[str]]) -> None:
    """
    Burn every native field into the page content and drop the widgets, so
    the output carries no editable form. Unlinked fields keep their value.
    """
    values = dict(form_values)
    for name, native in native_fields.items():
        if name in values:
            continue
        current = native.get("/V")
        if native.get("/FT") == "/Btn":
            values[name] = str(current) if current else "/Off"
        else:
            values[name] = None
    for page in writer.pages:
        if "/Annots" in page:
            writer.update_page_form_field_values(page, values, auto_regenerate=False, flatten=True)
    writer.remove_annotations(subtypes="/Widget")
    if "/AcroForm" in writer.root_object:
        del writer.root_object["/AcroForm"]


def _draw_overlay(pages, fields: List[Field], record: Dict[str, object], date_format: str) -> bytes:
    by_page: Dict[int, List[Field]] = {}
    for field in fields:
        by_page.setdefault(field.page, []).append(field)

    with io.BytesIO() as buffer:
        pdf = canvas.Canvas(buffer, invariant=1)
        for index, page in enumerate(pages):
            box = page.mediabox
            page_width, page_height = float(box.width), float(box.height)
            pdf.setPageSize((page_width, page_height))
            pdf.translate(float(box.left), float(box.bottom))
            for field in by_page.get(index, []):
                _draw_field(pdf, field, record.get(field.data_key), page_width, page_height, date_format)
            pdf.showPage()
        pdf.save()
        return buffer.getvalue()


def _draw_field(pdf, field: Field, value, page_width: float, page_height: float, date_format: str) -> None:
    x = field.x * page_width
    top = field.y * page_height
    box_width = field.width * page_width
    box_height = field.height * page_height
    font_size = field.font_size or DEFAULT_FONT_SIZE

    if field.type == "checkbox":
        if value is True:
            size = min(font_size + 2, box_height)
            pdf.setFont(CHECK_FONT, size)
            pdf.drawString(x + TEXT_PADDING, page_height - top - (box_height + size) / 2 + size * 0.15, CHECK_GLYPH)
        return

    text = format_field_value(field, value, date_format)
    if not text:
        return
    max_width = box_width - 2 * TEXT_PADDING
    size = fit_font_size(text, max_width, font_size)
    # (box_height - size) / 2 centres the line vertically; y is the baseline
    baseline = page_height - top - (box_height - size) / 2 - size * 0.8

    pdf.saveState()
    pdf.setFillColorRGB(*(SIGNATURE_COLOR if field.type == "signature" else (0, 0, 0)))
    pdf.setFont(TEXT_FONT, size)
    if field.align == "center":
        pdf.drawCentredString(x + box_width / 2, baseline, text)
    elif field.align == "right":
        pdf.drawRightString(x + box_width - TEXT_PADDING, baseline, text)
    else:
        pdf.drawString(x + TEXT_PADDING, baseline, text)
    pdf.restoreState()
