from __future__ import annotations

import io
import os
import sys
import tempfile
from pathlib import Path

import pytest
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

# Make the backend modules importable when running `pytest` from the repo root.
_BACKEND = Path(__file__).resolve().parents[1] / "backend"
if str(_BACKEND) not in sys.path:
    sys.path.insert(0, str(_BACKEND))

# main.py builds its service at import time; keep its data out of the source tree.
os.environ.setdefault("PDF_MAPPING_BASE_DIR", tempfile.mkdtemp(prefix="pdf-mapping-tests-"))

from pdf_mapping.models import Field  # noqa: E402
from pdf_mapping.settings import Settings  # noqa: E402
from pdf_mapping.template_store import TemplateStore  # noqa: E402


TAGGED_HTML = """<!DOCTYPE html>
<html>
<head><title>Contract</title>
<style>.editable-field { background-color: #fffacd; border: 1px dashed #999; }</style>
</head>
<body>
  <h1>Service contract</h1>
  <div class="parties-section">
    <p>Client: <span class="editable-field" data-field="company_name" contenteditable="true"
       style="background-color: #fffacd;">[Company name]</span></p>
    <p>Address: <input type="text" data-field="company_address" placeholder="[Address]"></p>
  </div>
  <div class="article">
    <div class="article-title">Art. 1 - Object</div>
    <p>The consultant provides the services described below.</p>
  </div>
  <div class="signature-section">
    <p>Date: <span data-field="signature_date">[Date]</span></p>
  </div>
</body>
</html>
"""


@pytest.fixture
def make_pdf():
    """Factory for small PDFs drawn with reportlab, optionally with form fields."""

    def _make(pages: int = 1, with_form: bool = False, text: str = "Template page") -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4, invariant=1)
        for index in range(pages):
            pdf.setFont("Helvetica", 12)
            pdf.drawString(72, 800, f"{text} {index + 1}")
            if with_form and index == 0:
                pdf.acroForm.textfield(
                    name="client_name", tooltip="Client name", x=72, y=700, width=200, height=20
                )
                pdf.acroForm.checkbox(name="accept_terms", tooltip="Accept terms", x=72, y=650, size=14)
            pdf.showPage()
        pdf.save()
        return buffer.getvalue()

    return _make


@pytest.fixture
def tagged_html() -> str:
    return TAGGED_HTML


@pytest.fixture
def store(tmp_path) -> TemplateStore:
    return TemplateStore(tmp_path)


@pytest.fixture
def pdf_template(store, make_pdf):
    return store.add_template("Service agreement", make_pdf(pages=2), filename="service.pdf")


@pytest.fixture
def html_template(store, tagged_html):
    return store.add_template("Performance contract", tagged_html.encode("utf-8"), filename="performance.html")


@pytest.fixture
def text_field() -> Field:
    return Field(
        id="f1",
        type="text",
        data_key="company_name",
        page=0,
        x=0.1,
        y=0.1,
        width=0.3,
        height=0.03,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(base_dir=tmp_path, settle_timeout=5.0)
