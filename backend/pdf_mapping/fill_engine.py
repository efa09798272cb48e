"""
Fills a template with a data record.

Two modes are supported, chosen by the resolved source:

* PDF sources get positional placement (see `pdf_utils.fill_positional`);
* HTML sources get tagged substitution (see `tagged_content.fill_tagged`).

The source is looked up in a fixed, ordered list of candidate locations. When
none of them resolves, a plain fallback document listing the record values is
produced instead of failing.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import requests
from lxml import html as lxml_html
from lxml.html import builder as E

from .exceptions import NotFoundError
from .models import DataRecord, Field, display_value, humanize_key
from .pdf_utils import fill_positional
from .tagged_content import fill_tagged
from .template_store import detect_source_kind

logger = logging.getLogger(__name__)

Location = Union[Path, str]

FALLBACK_CSS = """
body { font-family: Times, serif; font-size: 11pt; line-height: 1.4; }
.contract-title { font-size: 16pt; font-weight: bold; text-align: center; }
.field-label { font-weight: bold; }
"""


@dataclass
class TemplateSource:
    """Where a template's source may be found, in lookup order."""
    name: str
    kind: str = "pdf"
    candidates: List[Location] = field(default_factory=list)


@dataclass
class FilledContent:
    """Result of a fill: either HTML markup or PDF bytes."""
    kind: str
    title: str
    html: Optional[str] = None
    pdf_bytes: Optional[bytes] = None
    fallback: bool = False


class TemplateFillEngine:
    def __init__(self, date_format: str = "%d/%m/%Y", http_timeout: float = 10.0, session=None):
        self.date_format = date_format
        self.http_timeout = http_timeout
        self.session = session or requests.Session()

    def build_default_record(
        self,
        fields: Iterable[Field],
        context: Optional[Dict[str, object]] = None,
        today: Optional[dt.date] = None,
    ) -> DataRecord:
        """
        Initial record with one entry per mapped data key: today's date for
        date fields, False for checkboxes and '' otherwise. Context values
        override the default of a matching key; other context keys are ignored.
        """
        today = today or dt.date.today()
        context = context or {}
        record: DataRecord = {}
        for f in fields:
            if f.data_key in record:
                continue
            if f.type == "date":
                record[f.data_key] = today.strftime(self.date_format)
            elif f.type == "checkbox":
                record[f.data_key] = False
            else:
                record[f.data_key] = ""
            if f.data_key in context and context[f.data_key] is not None:
                record[f.data_key] = context[f.data_key]
        return record

    def fill(self, source: TemplateSource, fields: Iterable[Field], record: DataRecord) -> FilledContent:
        try:
            source_bytes = self.resolve(source)
        except NotFoundError as exc:
            logger.warning("%s; using fallback document", exc)
            return FilledContent(
                kind="html",
                title=source.name,
                html=self.fallback_document(source.name, record),
                fallback=True,
            )

        if detect_source_kind(source_bytes) == "pdf":
            pdf_bytes = fill_positional(source_bytes, fields, record, self.date_format)
            return FilledContent(kind="pdf", title=source.name, pdf_bytes=pdf_bytes)

        markup = source_bytes.decode("utf-8", errors="replace")
        return FilledContent(kind="html", title=source.name, html=fill_tagged(markup, record))

    def resolve(self, source: TemplateSource) -> bytes:
        """Bytes of the first candidate location that yields a non-empty source."""
        for candidate in source.candidates:
            data = self._read_candidate(candidate)
            if data:
                logger.info("Resolved template '%s' from %s", source.name, candidate)
                return data
        raise NotFoundError(f"Source for template '{source.name}' not found in {len(source.candidates)} location(s)")

    def fallback_document(self, title: str, record: DataRecord) -> str:
        rows = []
        for key, value in record.items():
            text = display_value(value)
            if text:
                rows.append(E.P(E.SPAN(E.CLASS("field-label"), f"{humanize_key(key)}: "), text))
        doc = E.HTML(
            E.HEAD(E.META(charset="utf-8"), E.TITLE(title), E.STYLE(FALLBACK_CSS)),
            E.BODY(
                E.DIV(E.CLASS("header"), E.H1(E.CLASS("contract-title"), title)),
                E.DIV(E.CLASS("parties-section"), *rows),
            ),
        )
        return lxml_html.tostring(doc, encoding="unicode", doctype="<!DOCTYPE html>")

    # ------------------------------------------------------------------
    def _read_candidate(self, candidate: Location) -> Optional[bytes]:
        if isinstance(candidate, str) and candidate.startswith(("http://", "https://")):
            try:
                response = self.session.get(candidate, timeout=self.http_timeout)
            except requests.RequestException as exc:
                logger.warning("Fetching %s failed: %s", candidate, exc)
                return None
            if response.status_code != 200:
                logger.debug("Candidate %s answered %s", candidate, response.status_code)
                return None
            return response.content

        path = Path(candidate)
        if not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.warning("Reading %s failed: %s", path, exc)
            return None
