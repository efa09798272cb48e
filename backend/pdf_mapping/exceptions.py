"""
Error taxonomy shared by the mapping editor, fill engine, renderer and
generation flow.
"""


class PDFMappingError(RuntimeError):
    """Domain-specific base exception for service errors."""


class ValidationError(PDFMappingError):
    """Raised when a template, mapping or record fails validation."""


class NotFoundError(PDFMappingError):
    """Raised when a template or its source bytes cannot be located."""


class RenderError(PDFMappingError):
    """Raised when layout, pagination or resource loading fails."""


class PersistenceError(PDFMappingError):
    """Raised when saving, generating or recording over a transport fails."""


class SubmissionPendingError(PDFMappingError):
    """Raised when a generation is submitted while another one is in flight."""
