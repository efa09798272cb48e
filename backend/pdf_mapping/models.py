"""
Data model for templates, field mappings, data records and generated documents.

Fields are serialized with the camelCase keys the editor front-end exchanges
(`dataKey`, `fontSize`, `pdfFieldName`); coordinates are normalized floats in
[0, 1] with the origin at the top-left corner of the page.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Union

from .exceptions import ValidationError

FIELD_TYPES = ("text", "date", "checkbox", "signature")
ALIGNMENTS = ("left", "center", "right")
SOURCE_KINDS = ("pdf", "html")

# Float slack for sums such as x + width computed from pixel positions.
GEOMETRY_EPSILON = 1e-9

RecordValue = Union[str, bool]
DataRecord = Dict[str, RecordValue]


@dataclass(frozen=True)
class Field:
    """A single mapped data slot positioned on one page of a template."""

    id: str
    type: str
    data_key: str
    page: int
    x: float
    y: float
    width: float
    height: float
    font_size: Optional[float] = None
    align: Optional[str] = None
    pdf_field_name: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {
            "id": self.id,
            "type": self.type,
            "dataKey": self.data_key,
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }
        if self.font_size is not None:
            data["fontSize"] = self.font_size
        if self.align is not None:
            data["align"] = self.align
        if self.pdf_field_name:
            data["pdfFieldName"] = self.pdf_field_name
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Field":
        try:
            font_size = data.get("fontSize", data.get("font_size"))
            return cls(
                id=str(data["id"]),
                type=str(data.get("type", "text")),
                data_key=str(data.get("dataKey", data.get("data_key", ""))),
                page=int(data.get("page", 0)),
                x=float(data["x"]),
                y=float(data["y"]),
                width=float(data["width"]),
                height=float(data["height"]),
                font_size=float(font_size) if font_size is not None else None,
                align=data.get("align"),
                pdf_field_name=data.get("pdfFieldName", data.get("pdf_field_name")) or None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed field definition: {data!r}") from exc


@dataclass
class Template:
    """A reusable source document plus its (optional) mapping."""

    id: str
    name: str
    description: str = ""
    category: str = "contract"
    source_page_count: int = 1
    has_mapping: bool = False
    source_kind: str = "pdf"
    source_file: str = ""
    created_at: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Template":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            description=data.get("description") or "",
            category=data.get("category") or "contract",
            source_page_count=int(data.get("source_page_count", 1)),
            has_mapping=bool(data.get("has_mapping", False)),
            source_kind=data.get("source_kind", "pdf"),
            source_file=data.get("source_file", ""),
            created_at=data.get("created_at", ""),
        )


@dataclass(frozen=True)
class GeneratedDocument:
    """Immutable artifact of one successful generation."""

    id: str
    template_id: str
    record: DataRecord
    output_ref: str
    filename: str
    created_at: str

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "record": dict(self.record),
            "output_ref": self.output_ref,
            "filename": self.filename,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GeneratedDocument":
        return cls(
            id=data["id"],
            template_id=data["template_id"],
            record=dict(data.get("record", {})),
            output_ref=data.get("output_ref", ""),
            filename=data.get("filename", ""),
            created_at=data.get("created_at", ""),
        )


def validate_field(f: Field, page_count: Optional[int] = None) -> None:
    """Raise ValidationError if the field's type, alignment or geometry is invalid."""
    if f.type not in FIELD_TYPES:
        raise ValidationError(f"Field '{f.id}' has unknown type '{f.type}'")
    if f.align is not None and f.align not in ALIGNMENTS:
        raise ValidationError(f"Field '{f.id}' has unknown alignment '{f.align}'")
    values = (f.x, f.y, f.width, f.height)
    if any(math.isnan(v) for v in values):
        raise ValidationError(f"Field '{f.id}' has non-numeric geometry")
    if f.x < 0 or f.y < 0 or f.width <= 0 or f.height <= 0:
        raise ValidationError(f"Field '{f.id}' geometry must be positive")
    if f.x + f.width > 1 + GEOMETRY_EPSILON or f.y + f.height > 1 + GEOMETRY_EPSILON:
        raise ValidationError(f"Field '{f.id}' extends beyond the page")
    if f.page < 0 or (page_count is not None and f.page >= page_count):
        raise ValidationError(f"Field '{f.id}' references page {f.page} outside the template")


def validate_mapping(fields: Iterable[Field], page_count: Optional[int] = None) -> List[Field]:
    """Validate every field and the uniqueness of ids; returns the fields as a list."""
    result = list(fields)
    seen = set()
    for f in result:
        if f.id in seen:
            raise ValidationError(f"Duplicate field id '{f.id}'")
        seen.add(f.id)
        validate_field(f, page_count)
    return result


def mapping_to_dicts(fields: Iterable[Field]) -> List[Dict]:
    return [f.to_dict() for f in fields]


def mapping_from_dicts(items: Iterable[Dict]) -> List[Field]:
    return [Field.from_dict(item) for item in items or []]


def is_blank(value) -> bool:
    """True for values that count as "not provided" (None, '', whitespace)."""
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    return not str(value).strip()


def display_value(value) -> str:
    """Text shown for a record value: booleans become a check mark or nothing."""
    if isinstance(value, bool):
        return "✓" if value else ""
    if value is None:
        return ""
    return str(value).strip()


def humanize_key(data_key: str) -> str:
    return data_key.replace("_", " ").strip().capitalize()
