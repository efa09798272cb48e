"""
PDF Template Scanner

Lists the native (AcroForm) form fields of a PDF template together with their
position, so that mapped fields can be linked to them or seeded from them.
"""

import io
import logging
import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .exceptions import ValidationError
from .models import Field

logger = logging.getLogger(__name__)

_FIELD_TYPES = {"/Tx": "text", "/Btn": "checkbox", "/Sig": "signature"}


@dataclass
class NativeField:
    """A form widget found in the source PDF, in normalized top-left coordinates."""
    name: str
    type: str
    page: int
    x: float
    y: float
    width: float
    height: float
    label: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class TemplateScanner:
    """Scans PDF templates for form fields"""

    def scan(self, source_bytes: bytes) -> List[NativeField]:
        try:
            reader = PdfReader(io.BytesIO(source_bytes), strict=False)
        except (PdfReadError, ValueError) as exc:
            raise ValidationError(f"Template is not a readable PDF: {exc}") from exc

        fields: List[NativeField] = []
        seen = set()
        for page_index, page in enumerate(reader.pages):
            box = page.mediabox
            page_width = float(box.width)
            page_height = float(box.height)
            if page_width <= 0 or page_height <= 0:
                continue
            annots = page["/Annots"] if "/Annots" in page else []
            for annot_ref in annots:
                annot = annot_ref.get_object()
                if annot.get("/Subtype") != "/Widget":
                    continue
                name = self._qualified_name(annot)
                if not name or (name, page_index) in seen:
                    continue
                seen.add((name, page_index))

                rect = annot["/Rect"] if "/Rect" in annot else (0, 0, 0, 0)
                x0, y0, x1, y1 = (float(v) for v in rect)
                left, right = sorted((x0, x1))
                bottom, top = sorted((y0, y1))
                fields.append(
                    NativeField(
                        name=name,
                        type=_FIELD_TYPES.get(self._inherited(annot, "/FT"), "text"),
                        page=page_index,
                        x=_unit((left - float(box.left)) / page_width),
                        y=_unit((float(box.top) - top) / page_height),
                        width=_unit((right - left) / page_width),
                        height=_unit((top - bottom) / page_height),
                        label=self._label(annot),
                    )
                )

        logger.info("Found %d native form fields", len(fields))
        return fields

    def suggest_fields(self, source_bytes: bytes) -> List[Field]:
        """Seed a mapping with one linked field per native form field."""
        suggestions = []
        for index, native in enumerate(self.scan(source_bytes)):
            width = min(native.width, 1 - native.x) or 0.01
            height = min(native.height, 1 - native.y) or 0.01
            suggestions.append(
                Field(
                    id=f"native-{index}",
                    type=native.type,
                    data_key=_data_key(native.label or native.name),
                    page=native.page,
                    x=min(native.x, 1 - width),
                    y=min(native.y, 1 - height),
                    width=width,
                    height=height,
                    pdf_field_name=native.name,
                )
            )
        return suggestions

    # ------------------------------------------------------------------
    def _qualified_name(self, annot) -> str:
        parts = []
        node = annot
        visited = set()
        while node is not None and id(node) not in visited:
            visited.add(id(node))
            if "/T" in node:
                parts.append(str(node["/T"]))
            node = node["/Parent"] if "/Parent" in node else None
        return ".".join(reversed(parts))

    def _inherited(self, annot, key: str) -> Optional[str]:
        node = annot
        while node is not None:
            if key in node:
                return node[key]
            node = node["/Parent"] if "/Parent" in node else None
        return None

    def _label(self, annot) -> Optional[str]:
        # /TU is the user-facing alternate name
        label = self._inherited(annot, "/TU")
        return " ".join(str(label).split()) if label else None


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def _data_key(text: str) -> str:
    key = re.sub(r"[^0-9a-zA-Z]+", "_", text).strip("_").lower()
    return key or "field"
