"""
Paginated rendering of filled content to PDF.

HTML content is converted to reportlab flowables laid out on an A4 frame.
Sections that must not be split (articles, the parties block, the signature
block, clauses, tables and anything marked `data-keep="together"`) are wrapped
in `KeepTogether`; headings stay with the block that follows them. Once the
page count is known, a second pass stamps every page with the brand mark and
a "Page X of N" label.

Images and the brand mark are loaded concurrently before layout; loading is
bounded by `settle_timeout` seconds.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import unquote

import requests
from lxml import etree
from lxml import html as lxml_html
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.platypus import (
    HRFlowable,
    Image,
    KeepTogether,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)
from reportlab.platypus.doctemplate import LayoutError

from .exceptions import RenderError
from .fill_engine import FilledContent

logger = logging.getLogger(__name__)

# top, right, bottom, left
PAGE_MARGINS = (20 * mm, 15 * mm, 30 * mm, 15 * mm)
FRAME_WIDTH = A4[0] - PAGE_MARGINS[1] - PAGE_MARGINS[3]

KEEP_TOGETHER_CLASSES = {"article", "parties-section", "signature-section", "clause"}
HEADING_TAGS = {"h1", "h2", "h3", "h4"}
BLOCK_TAGS = {
    "p", "div", "section", "article", "header", "footer", "main", "aside",
    "h1", "h2", "h3", "h4", "h5", "h6", "table", "ul", "ol", "li", "img",
    "hr", "blockquote", "pre", "form", "fieldset", "address",
}
SKIP_TAGS = {"head", "style", "script", "title", "meta", "link", "noscript", "template"}
INLINE_MARKUP = {"b": "b", "strong": "b", "i": "i", "em": "i", "u": "u", "sup": "super", "sub": "sub"}


def _classes(element) -> set:
    return set((element.get("class") or "").split())


def _escape(text: Optional[str]) -> str:
    if not text:
        return ""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def is_keep_together(element) -> bool:
    return (
        element.tag == "table"
        or bool(_classes(element) & KEEP_TOGETHER_CLASSES)
        or element.get("data-keep") == "together"
    )


def is_heading(element) -> bool:
    return element.tag in HEADING_TAGS or "article-title" in _classes(element)


class ResourceLoader:
    """Loads image bytes from data: URIs, http(s) URLs or local files."""

    def __init__(self, base_dir: Optional[Path] = None, http_timeout: float = 10.0, session=None):
        self.base_dir = Path(base_dir) if base_dir else None
        self.http_timeout = http_timeout
        self.session = session or requests.Session()

    def load(self, ref: str) -> bytes:
        if ref.startswith("data:"):
            header, _, payload = ref.partition(",")
            if header.endswith(";base64"):
                return base64.b64decode(payload)
            return unquote(payload).encode("utf-8")
        if ref.startswith(("http://", "https://")):
            response = self.session.get(ref, timeout=self.http_timeout)
            response.raise_for_status()
            return response.content
        path = Path(ref.replace("file://", "", 1))
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path.read_bytes()

    async def load_all(self, refs: Iterable[str], timeout: float) -> Dict[str, bytes]:
        """
        Load every reference concurrently. A reference that fails is left out;
        exceeding `timeout` raises RenderError.
        """
        refs = list(dict.fromkeys(r for r in refs if r))
        if not refs:
            return {}
        tasks = [asyncio.to_thread(self._load_or_none, ref) for ref in refs]
        try:
            results = await asyncio.wait_for(asyncio.gather(*tasks), timeout)
        except asyncio.TimeoutError as exc:
            raise RenderError(f"Resources not ready after {timeout:.1f}s") from exc
        return {ref: data for ref, data in zip(refs, results) if data}

    def _load_or_none(self, ref: str) -> Optional[bytes]:
        try:
            return self.load(ref)
        except (OSError, ValueError, requests.RequestException) as exc:
            logger.warning("Skipping resource %s: %s", ref[:80], exc)
            return None


class HtmlFlowables:
    """Converts an lxml HTML tree into a list of platypus flowables."""

    def __init__(self, images: Optional[Dict[str, bytes]] = None):
        self.images = images or {}
        sample = getSampleStyleSheet()
        self.body = ParagraphStyle("Body", parent=sample["BodyText"], fontName="Times-Roman", fontSize=11, leading=15)
        self.bold = ParagraphStyle("BodyBold", parent=self.body, fontName="Times-Bold")
        self.headings = {
            "h1": ParagraphStyle("H1", parent=sample["Heading1"], alignment=TA_CENTER, keepWithNext=1),
            "h2": ParagraphStyle("H2", parent=sample["Heading2"], keepWithNext=1),
            "h3": ParagraphStyle("H3", parent=sample["Heading3"], keepWithNext=1),
            "h4": ParagraphStyle("H4", parent=sample["Heading4"], keepWithNext=1),
        }
        self.article_title = ParagraphStyle("ArticleTitle", parent=self.bold, spaceBefore=8, keepWithNext=1)

    def build(self, root) -> List:
        body = root.find("body")
        flowables = self.flow_children(body if body is not None else root, self.body)
        return flowables or [Spacer(1, 1)]

    def flow_children(self, element, style) -> List:
        flowables: List = []
        run = [_escape(element.text)]
        for child in element:
            if not isinstance(child.tag, str):
                run.append(_escape(child.tail))
                continue
            if child.tag in SKIP_TAGS:
                run.append(_escape(child.tail))
                continue
            if child.tag in BLOCK_TAGS or is_heading(child) or is_keep_together(child):
                flowables.extend(self._paragraph("".join(run), style))
                flowables.extend(self.flow_element(child))
                run = [_escape(child.tail)]
            else:
                run.append(self.inline(child))
        flowables.extend(self._paragraph("".join(run), style))
        return flowables

    def flow_element(self, element) -> List:
        tag = element.tag
        if tag in SKIP_TAGS:
            return []
        if is_heading(element):
            style = self.headings.get(tag, self.article_title)
            return self._paragraph(self.inline_content(element), style)
        if tag == "table":
            table = self.table(element)
            return [KeepTogether([table])] if table is not None else []
        if tag in ("ul", "ol"):
            return self.list_items(element)
        if tag == "img":
            return self.image(element)
        if tag == "hr":
            return [HRFlowable(width="100%", thickness=0.5, color=colors.grey, spaceBefore=4, spaceAfter=4)]
        flowables = self.flow_children(element, self.body)
        if is_keep_together(element) and flowables:
            return [KeepTogether(flowables)]
        return flowables

    def inline(self, element) -> str:
        """Paragraph markup for an inline element, tail included."""
        if not isinstance(element.tag, str):  # comments, processing instructions
            return _escape(element.tail)
        tag = element.tag
        if tag == "br":
            content = "<br/>"
        elif tag in SKIP_TAGS or tag == "img":
            content = ""
        else:
            content = self.inline_content(element)
            markup = INLINE_MARKUP.get(tag)
            if markup and content:
                content = f"<{markup}>{content}</{markup}>"
        return content + _escape(element.tail)

    def inline_content(self, element) -> str:
        return _escape(element.text) + "".join(self.inline(child) for child in element)

    def list_items(self, element) -> List:
        flowables = []
        ordered = element.tag == "ol"
        for index, item in enumerate(element.findall("li"), start=1):
            bullet = f"{index}." if ordered else "•"
            text = self.inline_content(item)
            if text.strip():
                flowables.append(Paragraph(text, self.body, bulletText=bullet))
        return flowables

    def table(self, element) -> Optional[Table]:
        rows = []
        header_rows = 0
        for tr in element.iter("tr"):
            cells = [c for c in tr if isinstance(c.tag, str) and c.tag in ("td", "th")]
            if not cells:
                continue
            is_header = all(c.tag == "th" for c in cells)
            if is_header and len(rows) == header_rows:
                header_rows += 1
            style = self.bold if is_header else self.body
            rows.append([Paragraph(self.inline_content(c) or "&nbsp;", style) for c in cells])
        if not rows:
            return None
        columns = max(len(r) for r in rows)
        for row in rows:
            row.extend(Paragraph("&nbsp;", self.body) for _ in range(columns - len(row)))
        table = Table(rows, colWidths=[FRAME_WIDTH / columns] * columns, repeatRows=header_rows)
        table.setStyle(
            TableStyle(
                [
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ]
            )
        )
        return table

    def image(self, element) -> List:
        data = self.images.get(element.get("src") or "")
        if not data:
            return []
        try:
            width, height = ImageReader(io.BytesIO(data)).getSize()
        except (OSError, ValueError) as exc:
            logger.warning("Skipping unreadable image %s: %s", (element.get("src") or "")[:80], exc)
            return []
        scale = min(1.0, FRAME_WIDTH / float(width))
        return [Image(io.BytesIO(data), width=width * scale, height=height * scale)]

    def _paragraph(self, markup: str, style) -> List:
        text = " ".join(markup.split())
        return [Paragraph(text, style)] if text else []


class PaginatedRenderer:
    def __init__(
        self,
        brand_mark: Optional[str] = None,
        page_label: str = "Page {page} of {total}",
        settle_timeout: float = 5.0,
        stamp_native_pages: bool = False,
        loader: Optional[ResourceLoader] = None,
    ):
        self.brand_mark = brand_mark
        self.page_label = page_label
        self.settle_timeout = settle_timeout
        self.stamp_native_pages = stamp_native_pages
        self.loader = loader or ResourceLoader()

    async def render(self, filled: FilledContent) -> bytes:
        if filled.kind == "pdf":
            if not filled.pdf_bytes:
                raise RenderError("Filled PDF content is empty")
            if not self.stamp_native_pages:
                return filled.pdf_bytes
            resources = await self.loader.load_all([self.brand_mark], self.settle_timeout)
            return await asyncio.to_thread(self.stamp_furniture, filled.pdf_bytes, resources.get(self.brand_mark))

        try:
            root = lxml_html.document_fromstring(filled.html or "")
        except (etree.LxmlError, ValueError) as exc:
            raise RenderError(f"Could not parse filled content: {exc}") from exc

        refs = [img.get("src") for img in root.iter("img")] + [self.brand_mark]
        resources = await self.loader.load_all(refs, self.settle_timeout)
        return await asyncio.to_thread(self._render_html, root, resources, filled.title)

    def _render_html(self, root, resources: Dict[str, bytes], title: str) -> bytes:
        flowables = HtmlFlowables(resources).build(root)
        with io.BytesIO() as buffer:
            doc = SimpleDocTemplate(
                buffer,
                pagesize=A4,
                topMargin=PAGE_MARGINS[0],
                rightMargin=PAGE_MARGINS[1],
                bottomMargin=PAGE_MARGINS[2],
                leftMargin=PAGE_MARGINS[3],
                title=title,
                invariant=1,
            )
            try:
                doc.build(flowables)
            except (LayoutError, ValueError, TypeError) as exc:
                raise RenderError(f"Layout failed for '{title}': {exc}") from exc
            pdf_bytes = buffer.getvalue()
        return self.stamp_furniture(pdf_bytes, resources.get(self.brand_mark) if self.brand_mark else None)

    def stamp_furniture(self, pdf_bytes: bytes, brand_mark: Optional[bytes] = None) -> bytes:
        """Second pass: brand mark and page label on every page of a laid-out PDF."""
        try:
            reader = PdfReader(io.BytesIO(pdf_bytes), strict=False)
            total = len(reader.pages)
            mark = ImageReader(io.BytesIO(brand_mark)) if brand_mark else None
        except (PdfReadError, OSError, ValueError) as exc:
            raise RenderError(f"Could not stamp page furniture: {exc}") from exc

        with io.BytesIO() as overlay_buffer:
            pdf = canvas.Canvas(overlay_buffer, invariant=1)
            for index, page in enumerate(reader.pages):
                width, height = float(page.mediabox.width), float(page.mediabox.height)
                pdf.setPageSize((width, height))
                if mark is not None:
                    pdf.drawImage(
                        mark, 15 * mm, 8 * mm, width=30 * mm, height=12 * mm,
                        preserveAspectRatio=True, anchor="sw", mask="auto",
                    )
                pdf.setFont("Helvetica", 8)
                pdf.setFillColor(colors.grey)
                pdf.drawRightString(width - 15 * mm, 12 * mm, self.page_label.format(page=index + 1, total=total))
                pdf.showPage()
            pdf.save()
            overlay = PdfReader(io.BytesIO(overlay_buffer.getvalue()))

            writer = PdfWriter(clone_from=reader)
            for index, page in enumerate(writer.pages):
                page.merge_page(overlay.pages[index])
            with io.BytesIO() as out:
                writer.write(out)
                logger.info("Rendered %d page(s)", total)
                return out.getvalue()
