"""
Top-level generation flow: load a template, build a default record, validate
it, generate the PDF, record exactly one GeneratedDocument per successful
submission and only then hand the file to the download hook.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import inspect
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .exceptions import PDFMappingError, SubmissionPendingError, ValidationError
from .fill_engine import TemplateFillEngine
from .ledger import FileDocumentLedger, OutputStore
from .models import DataRecord, Field, Template, is_blank
from .template_store import TemplateStore

logger = logging.getLogger(__name__)

DownloadHook = Callable[[str, bytes], object]


@dataclass(frozen=True)
class Submission:
    document_id: str
    template_id: str
    filename: str
    output_ref: str
    size: int


def document_filename(template: Template, record: DataRecord, label_key: str = "company_name") -> str:
    """`contract-<label>-<template>.pdf`, with anything but letters and digits turned into '_'."""
    label = str(record.get(label_key) or "").strip() or "new"
    return f"contract-{_safe_name(label)}-{_safe_name(template.name)}.pdf"


def _safe_name(text: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", text)


class GenerationOrchestrator:
    def __init__(
        self,
        store: TemplateStore,
        generator,
        engine: TemplateFillEngine,
        ledger: FileDocumentLedger,
        output_store: OutputStore,
        download: Optional[DownloadHook] = None,
        label_key: str = "company_name",
    ):
        self.store = store
        self.generator = generator
        self.engine = engine
        self.ledger = ledger
        self.output_store = output_store
        self.download = download
        self.label_key = label_key

        self.template: Optional[Template] = None
        self.fields: List[Field] = []
        self._pending = False

    @property
    def is_pending(self) -> bool:
        return self._pending

    def load_template(self, template_id: str) -> Tuple[Template, List[Field]]:
        self.template, self.fields = self.store.get(template_id)
        return self.template, self.fields

    def init_record(
        self,
        fields: Optional[Iterable[Field]] = None,
        context: Optional[Dict[str, object]] = None,
        today: Optional[dt.date] = None,
    ) -> DataRecord:
        return self.engine.build_default_record(self.fields if fields is None else fields, context, today)

    async def submit(self, template_id: Optional[str], record: DataRecord, required: Iterable[str] = ()) -> Submission:
        if self._pending:
            raise SubmissionPendingError("A generation is already in progress")
        if not template_id:
            raise ValidationError("No template selected")
        missing = [key for key in required if is_blank(record.get(key))]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

        self._pending = True
        try:
            template = self.template
            if template is None or template.id != template_id:
                template, _ = await asyncio.to_thread(self.store.get, template_id)

            pdf_bytes = await self.generator.generate(template_id, record)
            filename = document_filename(template, record, self.label_key)

            document_id = uuid.uuid4().hex
            output_ref = await asyncio.to_thread(self.output_store.put, document_id, filename, pdf_bytes)
            try:
                document_id = await asyncio.to_thread(
                    self.ledger.create_document_record, template_id, record, output_ref, filename, document_id
                )
            except PDFMappingError:
                await self._discard_output(output_ref)
                raise

            if self.download is not None:
                result = self.download(filename, pdf_bytes)
                if inspect.isawaitable(result):
                    await result
        finally:
            self._pending = False

        logger.info("Generated %s for template %s (%d bytes)", document_id, template_id, len(pdf_bytes))
        return Submission(document_id, template_id, filename, output_ref, len(pdf_bytes))

    async def _discard_output(self, output_ref: str) -> None:
        try:
            await asyncio.to_thread(self.output_store.delete, output_ref)
        except PDFMappingError as exc:
            logger.error("Could not remove unrecorded output %s: %s", output_ref, exc)
