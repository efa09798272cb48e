"""
PDF template mapping and generation package.

This module bundles reusable utilities for:
  - storing templates and the field mappings drawn on top of them
  - editing mappings interactively (drag, resize, autosave)
  - filling templates with data records and paginating the result
  - running ledgered generations and storing the generated documents
"""

from .exceptions import (
    NotFoundError,
    PDFMappingError,
    PersistenceError,
    RenderError,
    SubmissionPendingError,
    ValidationError,
)
from .models import Field, GeneratedDocument, Template
from .service import PDFMappingService
from .settings import Settings

__all__ = [
    "Field",
    "GeneratedDocument",
    "NotFoundError",
    "PDFMappingError",
    "PDFMappingService",
    "PersistenceError",
    "RenderError",
    "Settings",
    "SubmissionPendingError",
    "Template",
    "ValidationError",
]
