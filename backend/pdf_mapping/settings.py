"""
Environment-driven configuration for the PDF mapping service.

Values are read from the process environment after loading `.env.local` and
`.env` (if present), the same way the API entrypoint does.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv(".env.local"); load_dotenv()  # also loads .env if present


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


@dataclass
class Settings:
    base_dir: Path
    template_urls: List[str] = field(default_factory=list)
    s3_bucket: Optional[str] = None
    s3_prefix: str = "pdf-mapping/"
    remote_url: Optional[str] = None
    autosave_seconds: float = 30.0
    settle_timeout: float = 5.0
    brand_mark: Optional[str] = None
    page_label: str = "Page {page} of {total}"
    date_format: str = "%d/%m/%Y"
    edit_scale: float = 1.5
    stamp_native_pages: bool = False
    session_ttl: int = 3600

    @classmethod
    def from_env(cls) -> "Settings":
        base_dir = Path(
            os.getenv("PDF_MAPPING_BASE_DIR")
            or Path(__file__).resolve().parent / "data"
        )
        return cls(
            base_dir=base_dir,
            template_urls=_env_list("PDF_MAPPING_TEMPLATE_URLS"),
            s3_bucket=os.getenv("PDF_MAPPING_S3_BUCKET") or None,
            s3_prefix=os.getenv("PDF_MAPPING_S3_PREFIX", "pdf-mapping/"),
            remote_url=os.getenv("PDF_MAPPING_REMOTE_URL") or None,
            autosave_seconds=float(os.getenv("PDF_MAPPING_AUTOSAVE_SECONDS", "30")),
            settle_timeout=float(os.getenv("PDF_MAPPING_SETTLE_TIMEOUT", "5")),
            brand_mark=os.getenv("PDF_MAPPING_BRAND_MARK") or None,
            page_label=os.getenv("PDF_MAPPING_PAGE_LABEL", "Page {page} of {total}"),
            date_format=os.getenv("PDF_MAPPING_DATE_FORMAT", "%d/%m/%Y"),
            edit_scale=float(os.getenv("PDF_MAPPING_EDIT_SCALE", "1.5")),
            stamp_native_pages=_env_bool("PDF_MAPPING_STAMP_NATIVE"),
            session_ttl=int(os.getenv("SESSION_TTL", "3600")),
        )
