"""
Template and mapping storage for the PDF mapping service.

Persists each template under `templates/<id>/` inside the base directory:
`meta.json` (template metadata), `source.pdf` or `source.html` (the uploaded
source) and `mapping.json` (the field list). Loose source files dropped into
`pdf_templates/` are used as additional candidate locations when resolving a
template's source.
"""

from __future__ import annotations

import datetime as dt
import io
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .exceptions import NotFoundError, PersistenceError, ValidationError
from .models import Field, Template, mapping_from_dicts, mapping_to_dicts, validate_mapping

logger = logging.getLogger(__name__)

Location = Union[Path, str]


def detect_source_kind(source_bytes: bytes) -> str:
    return "pdf" if source_bytes.lstrip()[:5] == b"%PDF-" else "html"


def count_pdf_pages(source_bytes: bytes) -> int:
    try:
        reader = PdfReader(io.BytesIO(source_bytes), strict=False)
        return len(reader.pages)
    except (PdfReadError, ValueError) as exc:
        raise ValidationError(f"Uploaded file is not a readable PDF: {exc}") from exc


class TemplateStore:
    """Handles template directories, source bytes and mappings."""

    def __init__(self, base_dir: Path, template_urls: Optional[List[str]] = None):
        self.base_dir = Path(base_dir)
        self.templates_dir = self.base_dir / "templates"
        self.loose_sources_dir = self.base_dir / "pdf_templates"
        self.templates_dir.mkdir(parents=True, exist_ok=True)
        self.template_urls = list(template_urls or [])

    def get_template_dir(self, template_id: str) -> Path:
        return self.templates_dir / template_id

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def add_template(
        self,
        name: str,
        source_bytes: bytes,
        filename: Optional[str] = None,
        description: str = "",
        category: str = "contract",
    ) -> Template:
        if not source_bytes:
            raise ValidationError("Uploaded template is empty")
        kind = detect_source_kind(source_bytes)
        page_count = count_pdf_pages(source_bytes) if kind == "pdf" else 1

        template_id = uuid.uuid4().hex
        template = Template(
            id=template_id,
            name=name,
            description=description or "",
            category=category or "contract",
            source_page_count=page_count,
            source_kind=kind,
            source_file=filename or f"{name}.{kind}",
            created_at=dt.datetime.utcnow().isoformat() + "Z",
        )
        template_dir = self.get_template_dir(template_id)
        template_dir.mkdir(parents=True, exist_ok=True)
        try:
            (template_dir / f"source.{kind}").write_bytes(source_bytes)
            self._write_json(template_dir / "meta.json", template.to_dict())
        except OSError as exc:
            raise PersistenceError(f"Could not store template '{name}': {exc}") from exc

        logger.info("Stored template %s (%s, %d pages)", template_id, kind, page_count)
        return template

    def list_templates(self, category: Optional[str] = None) -> List[Template]:
        results = []
        for meta_file in sorted(self.templates_dir.glob("*/meta.json")):
            try:
                template = self._load_template(meta_file.parent.name)
            except NotFoundError:  # pragma: no cover - removed while listing
                continue
            if category and template.category != category:
                continue
            results.append(template)
        results.sort(key=lambda t: t.created_at, reverse=True)
        return results

    def get(self, template_id: str) -> Tuple[Template, List[Field]]:
        template = self._load_template(template_id)
        return template, self._load_mapping(template_id)

    def fetch_source_bytes(self, template_id: str) -> bytes:
        template = self._load_template(template_id)
        path = self.get_template_dir(template_id) / f"source.{template.source_kind}"
        if not path.exists():
            raise NotFoundError(f"Source for template '{template_id}' is missing")
        return path.read_bytes()

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------
    def save_mapping(self, template_id: str, fields: List[Field]) -> Dict:
        """Replace the template's mapping as a whole; the last write wins."""
        template = self._load_template(template_id)
        fields = validate_mapping(fields, template.source_page_count)
        mapping_file = self.get_template_dir(template_id) / "mapping.json"
        try:
            self._write_json(mapping_file, {"fields": mapping_to_dicts(fields)})
        except OSError as exc:
            raise PersistenceError(f"Error saving mapping for {template_id}: {exc}") from exc
        logger.info("Saved mapping for %s (%d fields)", template_id, len(fields))
        return {"success": True, "fieldCount": len(fields)}

    # ------------------------------------------------------------------
    # Source resolution
    # ------------------------------------------------------------------
    def candidate_locations(self, template: Template) -> List[Location]:
        """
        Ordered places where a template's source may live: the stored copy,
        loose files by source file name or template name (exact, then a
        case-insensitive partial match), then configured remote base URLs.
        """
        kind = template.source_kind
        candidates: List[Location] = [self.get_template_dir(template.id) / f"source.{kind}"]
        if template.source_file:
            candidates.append(self.loose_sources_dir / template.source_file)
        candidates.append(self.loose_sources_dir / f"{template.name}.{kind}")

        if self.loose_sources_dir.exists():
            needle = template.name.lower()
            for path in sorted(self.loose_sources_dir.glob(f"*.{kind}")):
                if needle and needle in path.stem.lower() and path not in candidates:
                    candidates.append(path)

        for base_url in self.template_urls:
            name = template.source_file or f"{template.name}.{kind}"
            candidates.append(f"{base_url.rstrip('/')}/{name}")
        return candidates

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_template(self, template_id: str) -> Template:
        meta_file = self.get_template_dir(template_id) / "meta.json"
        if not template_id or not meta_file.exists():
            raise NotFoundError(f"Template '{template_id}' not found")
        try:
            with meta_file.open("r", encoding="utf-8") as f:
                template = Template.from_dict(json.load(f))
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Error loading template {template_id}: {exc}") from exc
        template.has_mapping = bool(self._load_mapping(template_id))
        return template

    def _load_mapping(self, template_id: str) -> List[Field]:
        mapping_file = self.get_template_dir(template_id) / "mapping.json"
        if not mapping_file.exists():
            return []
        try:
            with mapping_file.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Error loading mapping for {template_id}: {exc}") from exc
        return mapping_from_dicts(data.get("fields", []))

    @staticmethod
    def _write_json(path: Path, payload: Dict) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)
