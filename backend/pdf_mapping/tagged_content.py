"""
Tagged HTML templates: elements carrying `data-field="<dataKey>"` are value
slots. A slot is either an inline holder (`<span>`), an input-like placeholder
(`<input>`, `<textarea>`) or a block holder (`<div>`, `<td>`, ...).

The document is parsed once into slot descriptors and each descriptor is then
substituted in document order, so the result does not depend on the order of
keys in the record.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Dict, List

from lxml import etree
from lxml import html as lxml_html

from .models import display_value

logger = logging.getLogger(__name__)

INLINE_TAGS = {"span", "a", "b", "strong", "em", "i", "u", "label", "small", "mark", "code", "font"}
INPUT_TAGS = {"input", "textarea", "select"}

_HIGHLIGHT = re.compile(r"background(-color)?\s*:\s*#fffacd\s*;?", re.I)
_EDITABLE_RULE = re.compile(r"\.editable-field\s*\{[^}]*\}", re.I)

STATIC_FIELD_CSS = """
[data-field], .editable-field, .editable-table-cell {
  background: transparent !important;
  border: none !important;
  outline: none !important;
  box-shadow: none !important;
  padding: 0 !important;
  color: #000 !important;
}
.editable-field { display: inline !important; }
.article, .parties-section, .signature-section, .clause, table {
  page-break-inside: avoid !important;
  break-inside: avoid !important;
}
h1, h2, h3, h4, .article-title { page-break-after: avoid !important; }
p { orphans: 4; widows: 4; }
"""


class SlotKind(str, enum.Enum):
    INLINE = "inline"
    INPUT = "input"
    BLOCK = "block"


@dataclass(frozen=True)
class Slot:
    data_key: str
    kind: SlotKind
    element: etree._Element


def parse_document(markup: str) -> etree._Element:
    return lxml_html.document_fromstring(markup)


def slot_kind(element: etree._Element) -> SlotKind:
    tag = element.tag.lower() if isinstance(element.tag, str) else ""
    if tag in INPUT_TAGS:
        return SlotKind.INPUT
    if tag in INLINE_TAGS:
        return SlotKind.INLINE
    return SlotKind.BLOCK


def parse_slots(root: etree._Element) -> List[Slot]:
    """Descriptors for every tagged element, in document order."""
    slots = []
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        key = (element.get("data-field") or "").strip()
        if key:
            slots.append(Slot(key, slot_kind(element), element))
    return slots


def substitute(slots: List[Slot], record: Dict[str, object]) -> int:
    """
    Write record values into their slots. Keys with an empty value are left
    untouched; slots nested inside a replaced slot are skipped. Returns the
    number of slots filled.
    """
    replaced = set()
    filled = 0
    for slot in slots:
        if any(ancestor in replaced for ancestor in slot.element.iterancestors()):
            continue
        value = display_value(record.get(slot.data_key))
        if not value:
            continue
        if slot.kind is SlotKind.INPUT:
            _replace_input(slot.element, value)
        else:
            _set_content(slot.element, value)
            replaced.add(slot.element)
        filled += 1
    return filled


def strip_affordances(root: etree._Element) -> None:
    """Make the document read as static content: no editable or input-like slots."""
    for element in list(root.iter()):
        if not isinstance(element.tag, str):
            continue
        element.attrib.pop("contenteditable", None)
        style = element.get("style")
        if style and _HIGHLIGHT.search(style):
            cleaned = _HIGHLIGHT.sub("", style).strip()
            if cleaned:
                element.set("style", cleaned)
            else:
                del element.attrib["style"]
        if element.tag.lower() in INPUT_TAGS and element.get("data-field"):
            _replace_input(element, element.get("value") or (element.text or "").strip())
        if element.tag.lower() == "style" and element.text:
            element.text = _EDITABLE_RULE.sub(
                ".editable-field { display: inline; background: transparent; border: none; }",
                element.text,
            )

    head = root.find("head")
    if head is None:
        head = etree.Element("head")
        root.insert(0, head)
    style = etree.SubElement(head, "style")
    style.set("data-role", "static-fields")
    style.text = STATIC_FIELD_CSS


def serialize(root: etree._Element) -> str:
    doctype = root.getroottree().docinfo.doctype or "<!DOCTYPE html>"
    return lxml_html.tostring(root, encoding="unicode", doctype=doctype)


def fill_tagged(markup: str, record: Dict[str, object]) -> str:
    root = parse_document(markup)
    slots = parse_slots(root)
    filled = substitute(slots, record)
    strip_affordances(root)
    logger.info("Filled %d of %d tagged slots", filled, len(slots))
    return serialize(root)


def _set_content(element: etree._Element, value: str) -> None:
    for child in list(element):
        element.remove(child)
    element.text = value
    element.attrib.pop("contenteditable", None)
    element.set("style", "background:transparent;border:none;")


def _replace_input(element: etree._Element, value: str) -> None:
    parent = element.getparent()
    if parent is None:
        return
    span = etree.Element("span")
    key = element.get("data-field")
    if key:
        span.set("data-field", key)
    span.set("class", "editable-field")
    span.set("style", "display:inline;background:transparent;border:none;")
    span.text = value
    span.tail = element.tail
    parent.replace(element, span)
