"""
Rasterizes template pages for the mapping editor using PyMuPDF.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import fitz  # PyMuPDF

from .exceptions import NotFoundError, RenderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderedPage:
    pixel_width: int
    pixel_height: int
    png: bytes


class PageRenderer:
    """Renders page N of a PDF source to a PNG raster and reports its size."""

    def page_count(self, source_bytes: bytes) -> int:
        with self._open(source_bytes) as doc:
            return doc.page_count

    def render_page(self, source_bytes: bytes, page_index: int, scale: float = 1.5) -> RenderedPage:
        if scale <= 0:
            raise RenderError(f"Render scale must be positive, got {scale}")
        with self._open(source_bytes) as doc:
            if page_index < 0 or page_index >= doc.page_count:
                raise NotFoundError(
                    f"Page {page_index} out of range. PDF has {doc.page_count} page(s)."
                )
            page = doc[page_index]
            pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            logger.debug("Rendered page %d at scale %.2f (%dx%d)", page_index, scale, pixmap.width, pixmap.height)
            return RenderedPage(pixel_width=pixmap.width, pixel_height=pixmap.height, png=pixmap.tobytes("png"))

    @staticmethod
    def _open(source_bytes: bytes):
        try:
            return fitz.open(stream=source_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise RenderError(f"Could not open PDF source: {exc}") from exc
