import base64
import binascii
import logging

from dotenv import load_dotenv

load_dotenv(".env.local"); load_dotenv()  # also loads .env if present

import os  # noqa: E402
from typing import Optional  # noqa: E402

from cachetools import TTLCache  # noqa: E402
from fastapi import FastAPI, HTTPException, Response  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from pydantic import BaseModel  # noqa: E402

from pdf_mapping import (  # noqa: E402
    NotFoundError,
    PDFMappingError,
    PDFMappingService,
    PersistenceError,
    RenderError,
    SubmissionPendingError,
    ValidationError,
)
from pdf_mapping.models import mapping_to_dicts  # noqa: E402
from pdf_mapping.orchestrator import GenerationOrchestrator  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PDF template mapping")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "*"
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))  # 1 hour default
SESSIONS = TTLCache(maxsize=1000, ttl=SESSION_TTL)

pdf_mapping_service = PDFMappingService()

_STATUS = [
    (SubmissionPendingError, 409),
    (NotFoundError, 404),
    (ValidationError, 400),
    (PersistenceError, 502),
    (RenderError, 500),
]


def _http_error(exc: PDFMappingError) -> HTTPException:
    for error_type, status in _STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def get_orchestrator(session_id: Optional[str]) -> GenerationOrchestrator:
    """One orchestrator per editor session so the single-flight guard spans requests."""
    if not session_id:
        return pdf_mapping_service.orchestrator()
    orchestrator = SESSIONS.get(session_id)
    if orchestrator is None:
        orchestrator = pdf_mapping_service.orchestrator()
        SESSIONS[session_id] = orchestrator
    return orchestrator


class TemplateUploadRequest(BaseModel):
    name: str
    source_base64: str
    filename: Optional[str] = None
    description: str = ""
    category: str = "contract"


class MappingSaveRequest(BaseModel):
    fields: list[dict]


class RecordRequest(BaseModel):
    context: dict = {}


class RenderRequest(BaseModel):
    template_id: str
    record: dict


class GenerateRequest(BaseModel):
    template_id: Optional[str] = None
    record: dict
    required: list[str] = []
    session_id: Optional[str] = None


@app.get("/health")
def health():
    return {"ok": True}


# --- Templates ----------------------------------------------------------------


@app.get("/pdf/templates")
def pdf_list_templates(category: Optional[str] = None):
    templates = pdf_mapping_service.list_templates(category)
    return {"templates": [t.to_dict() for t in templates]}


@app.post("/pdf/templates")
def pdf_upload_template(req: TemplateUploadRequest):
    try:
        source_bytes = base64.b64decode(req.source_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid base64 payload: {exc}") from exc
    try:
        template = pdf_mapping_service.add_template(
            req.name, source_bytes, req.filename, req.description, req.category
        )
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return {"template": template.to_dict()}


@app.get("/pdf/templates/{template_id}")
def pdf_get_template(template_id: str):
    try:
        template, fields = pdf_mapping_service.get_template(template_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return {"template": template.to_dict(), "fields": mapping_to_dicts(fields)}


@app.get("/pdf/templates/{template_id}/source")
def pdf_get_source(template_id: str):
    try:
        template, source = pdf_mapping_service.get_source(template_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    media_type = "application/pdf" if template.source_kind == "pdf" else "text/html"
    headers = {"Content-Disposition": f'inline; filename="{template.source_file}"'}
    return Response(content=source, media_type=media_type, headers=headers)


@app.get("/pdf/templates/{template_id}/fields")
def pdf_native_fields(template_id: str):
    try:
        native = pdf_mapping_service.native_fields(template_id)
        suggestions = pdf_mapping_service.suggest_fields(template_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return {
        "template_id": template_id,
        "fields": [f.to_dict() for f in native],
        "suggestions": mapping_to_dicts(suggestions),
    }


@app.get("/pdf/templates/{template_id}/pages/{page_index}")
def pdf_render_page(template_id: str, page_index: int, scale: Optional[float] = None):
    try:
        page = pdf_mapping_service.render_page(template_id, page_index, scale)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    headers = {"X-Page-Width": str(page.pixel_width), "X-Page-Height": str(page.pixel_height)}
    return Response(content=page.png, media_type="image/png", headers=headers)


# --- Mapping ------------------------------------------------------------------


@app.get("/pdf/templates/{template_id}/mapping")
def pdf_get_mapping(template_id: str):
    try:
        _, fields = pdf_mapping_service.get_template(template_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return {"template_id": template_id, "fields": mapping_to_dicts(fields)}


@app.put("/pdf/templates/{template_id}/mapping")
def pdf_save_mapping(template_id: str, req: MappingSaveRequest):
    try:
        return pdf_mapping_service.save_mapping(template_id, req.fields)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc


@app.post("/pdf/templates/{template_id}/record")
def pdf_default_record(template_id: str, req: RecordRequest):
    try:
        record = pdf_mapping_service.default_record(template_id, req.context)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return {"template_id": template_id, "record": record}


# --- Generation ---------------------------------------------------------------


@app.post("/pdf/render")
async def pdf_render(req: RenderRequest):
    """Fill and paginate without recording a document (remote generation contract)."""
    try:
        pdf_bytes = await pdf_mapping_service.render(req.template_id, req.record)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return Response(content=pdf_bytes, media_type="application/pdf")


@app.post("/pdf/generate")
async def pdf_generate(req: GenerateRequest):
    orchestrator = get_orchestrator(req.session_id)
    try:
        submission = await orchestrator.submit(req.template_id, req.record, required=req.required)
        _, pdf_bytes = pdf_mapping_service.get_document_bytes(submission.document_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc

    encoded = base64.b64encode(pdf_bytes).decode("ascii")
    return {
        "document_id": submission.document_id,
        "filename": submission.filename,
        "pdf_base64": encoded,
    }


@app.get("/pdf/documents/{document_id}")
def pdf_get_document(document_id: str):
    try:
        document = pdf_mapping_service.get_document(document_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    return {"document": document.to_dict()}


@app.get("/pdf/documents/{document_id}/download")
def pdf_download_document(document_id: str):
    """Download a generated PDF by ID"""
    try:
        document, pdf_bytes = pdf_mapping_service.get_document_bytes(document_id)
    except PDFMappingError as exc:
        raise _http_error(exc) from exc
    headers = {"Content-Disposition": f'attachment; filename="{document.filename}"'}
    return Response(content=pdf_bytes, media_type="application/pdf", headers=headers)
