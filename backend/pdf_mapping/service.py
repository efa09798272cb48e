"""
High-level service that exposes PDF mapping capabilities to the FastAPI layer.

Responsibilities
----------------
* manage templates, their sources and their field mappings
* rasterize pages and list native form fields for the mapping editor
* fill templates with data records and paginate the result
* run ledgered generations and serve the generated documents back
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .field_editor import EditorSession, FieldEditor
from .fill_engine import TemplateFillEngine
from .generation import LocalGenerator, RemoteGenerator
from .ledger import FileDocumentLedger, OutputStore
from .models import DataRecord, Field, GeneratedDocument, Template, mapping_from_dicts
from .orchestrator import DownloadHook, GenerationOrchestrator
from .page_renderer import PageRenderer, RenderedPage
from .paginated_renderer import PaginatedRenderer, ResourceLoader
from .settings import Settings
from .template_scanner import NativeField, TemplateScanner
from .template_store import TemplateStore

logger = logging.getLogger(__name__)


class PDFMappingService:
    def __init__(self, settings: Optional[Settings] = None, s3_client=None):
        self.settings = settings or Settings.from_env()
        base_dir = self.settings.base_dir
        base_dir.mkdir(parents=True, exist_ok=True)

        self.store = TemplateStore(base_dir, template_urls=self.settings.template_urls)
        self.page_renderer = PageRenderer()
        self.scanner = TemplateScanner()
        self.engine = TemplateFillEngine(date_format=self.settings.date_format)
        self.renderer = PaginatedRenderer(
            brand_mark=self.settings.brand_mark,
            page_label=self.settings.page_label,
            settle_timeout=self.settings.settle_timeout,
            stamp_native_pages=self.settings.stamp_native_pages,
            loader=ResourceLoader(base_dir=base_dir),
        )
        self.output_store = OutputStore(
            base_dir,
            s3_bucket=self.settings.s3_bucket,
            s3_prefix=self.settings.s3_prefix,
            s3_client=s3_client,
        )
        self.ledger = FileDocumentLedger(base_dir)

        self.local_generator = LocalGenerator(self.store, self.engine, self.renderer)
        if self.settings.remote_url:
            self.generator = RemoteGenerator(self.settings.remote_url)
            logger.info("Generation delegated to %s", self.settings.remote_url)
        else:
            self.generator = self.local_generator

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def list_templates(self, category: Optional[str] = None) -> List[Template]:
        return self.store.list_templates(category)

    def add_template(
        self,
        name: str,
        source_bytes: bytes,
        filename: Optional[str] = None,
        description: str = "",
        category: str = "contract",
    ) -> Template:
        return self.store.add_template(name, source_bytes, filename, description, category)

    def get_template(self, template_id: str) -> Tuple[Template, List[Field]]:
        return self.store.get(template_id)

    def get_source(self, template_id: str) -> Tuple[Template, bytes]:
        template, _ = self.store.get(template_id)
        return template, self.store.fetch_source_bytes(template_id)

    def native_fields(self, template_id: str) -> List[NativeField]:
        template, source = self.get_source(template_id)
        if template.source_kind != "pdf":
            return []
        return self.scanner.scan(source)

    def suggest_fields(self, template_id: str) -> List[Field]:
        template, source = self.get_source(template_id)
        if template.source_kind != "pdf":
            return []
        return self.scanner.suggest_fields(source)

    def render_page(self, template_id: str, page_index: int, scale: Optional[float] = None) -> RenderedPage:
        _, source = self.get_source(template_id)
        return self.page_renderer.render_page(source, page_index, scale or self.settings.edit_scale)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------
    def save_mapping(self, template_id: str, fields: Iterable[Dict]) -> Dict:
        return self.store.save_mapping(template_id, mapping_from_dicts(fields))

    def open_editor(self, template_id: str) -> FieldEditor:
        return FieldEditor.from_store(
            self.store, template_id, renderer=self.page_renderer, scale=self.settings.edit_scale
        )

    def editor_session(self, editor: FieldEditor) -> EditorSession:
        return EditorSession(editor, interval=self.settings.autosave_seconds)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def default_record(
        self,
        template_id: str,
        context: Optional[Dict[str, object]] = None,
        today: Optional[dt.date] = None,
    ) -> DataRecord:
        _, fields = self.store.get(template_id)
        return self.engine.build_default_record(fields, context, today)

    async def render(self, template_id: str, record: DataRecord) -> bytes:
        """Fill and paginate in-process without recording a document."""
        return await self.local_generator.generate(template_id, record)

    def orchestrator(self, download: Optional[DownloadHook] = None) -> GenerationOrchestrator:
        return GenerationOrchestrator(
            self.store,
            self.generator,
            self.engine,
            self.ledger,
            self.output_store,
            download=download,
        )

    def get_document(self, document_id: str) -> GeneratedDocument:
        return self.ledger.get_document(document_id)

    def get_document_bytes(self, document_id: str) -> Tuple[GeneratedDocument, bytes]:
        document = self.ledger.get_document(document_id)
        return document, self.output_store.get(document.output_ref)
