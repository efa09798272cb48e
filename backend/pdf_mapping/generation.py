"""
Generation capabilities: turn (template id, data record) into PDF bytes.

`LocalGenerator` runs the fill engine and the paginated renderer in-process;
`RemoteGenerator` delegates to another instance of the service over HTTP
(`POST /pdf/render`).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests

from .exceptions import NotFoundError, PersistenceError, RenderError, ValidationError
from .fill_engine import TemplateFillEngine, TemplateSource
from .models import DataRecord
from .paginated_renderer import PaginatedRenderer
from .template_store import TemplateStore

logger = logging.getLogger(__name__)


class LocalGenerator:
    def __init__(self, store: TemplateStore, engine: TemplateFillEngine, renderer: PaginatedRenderer):
        self.store = store
        self.engine = engine
        self.renderer = renderer

    async def generate(self, template_id: str, record: DataRecord) -> bytes:
        template, fields = await asyncio.to_thread(self.store.get, template_id)
        source = TemplateSource(
            name=template.name,
            kind=template.source_kind,
            candidates=self.store.candidate_locations(template),
        )
        filled = await asyncio.to_thread(self.engine.fill, source, fields, record)
        if filled.fallback:
            logger.warning("Template %s rendered from fallback document", template_id)
        return await self.renderer.render(filled)


class RemoteGenerator:
    """Calls a remote `/pdf/render` endpoint and returns the PDF body."""

    def __init__(self, base_url: str, timeout: float = 60.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    async def generate(self, template_id: str, record: DataRecord) -> bytes:
        return await asyncio.to_thread(self._post, template_id, dict(record))

    def _post(self, template_id: str, record: DataRecord) -> bytes:
        url = f"{self.base_url}/pdf/render"
        try:
            response = self.session.post(
                url, json={"template_id": template_id, "record": record}, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise PersistenceError(f"Remote generation at {url} failed: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(_detail(response, f"Template '{template_id}' not found"))
        if response.status_code == 400:
            raise ValidationError(_detail(response, "Record rejected by remote generator"))
        if response.status_code != 200:
            raise RenderError(_detail(response, f"Remote generation returned {response.status_code}"))
        if not response.content:
            raise RenderError("Remote generation returned an empty document")
        return response.content


def _detail(response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    return (data.get("detail") if isinstance(data, dict) else None) or default
