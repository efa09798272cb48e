"""
Interactive field overlay for mapping data slots onto template pages.

The editor owns the mapping being edited, the current selection and the
pointer interaction, modelled as a small state machine:

    Idle --begin_drag--> Dragging(field_id, offset) --end_interaction--> Idle
    Idle --begin_resize--> Resizing(field_id)        --end_interaction--> Idle

Pointer positions are pixels relative to the top-left corner of the rendered
page; field geometry is stored normalized to the page size. Gesture handling
is synchronous and purely local; only `save()` touches the store.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import enum
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .exceptions import NotFoundError, PDFMappingError, ValidationError
from .models import Field, validate_field
from .page_renderer import PageRenderer
from .template_store import TemplateStore

logger = logging.getLogger(__name__)

MIN_WIDTH_PX = 30
MIN_HEIGHT_PX = 20
# A4 at the editor's default render width
DEFAULT_PAGE_SIZE = (800, 1131)


class Mode(str, enum.Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    RESIZING = "resizing"


class SaveState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class PageSize:
    width: float
    height: float


@dataclass(frozen=True)
class Interaction:
    mode: Mode = Mode.IDLE
    field_id: Optional[str] = None
    offset: Point = Point(0.0, 0.0)


IDLE = Interaction()


def _clamp(low: float, high: float, value: float) -> float:
    return max(low, min(high, value))


def drag_to(field: Field, pointer: Point, offset: Point, page: PageSize) -> Field:
    """Move `field` so its top-left sits at `pointer - offset`, kept inside the page."""
    x = _clamp(0.0, 1.0 - field.width, (pointer.x - offset.x) / page.width)
    y = _clamp(0.0, 1.0 - field.height, (pointer.y - offset.y) / page.height)
    return replace(field, x=x, y=y)


def resize_to(field: Field, pointer: Point, page: PageSize) -> Field:
    """
    Resize `field` so its bottom-right corner follows `pointer`.

    The size never drops below MIN_WIDTH_PX x MIN_HEIGHT_PX and never runs past
    the page edge; when the remaining extent is smaller than the minimum the
    page edge wins.
    """
    left = field.x * page.width
    top = field.y * page.height
    max_width = page.width - left
    max_height = page.height - top
    width = min(max_width, max(MIN_WIDTH_PX, min(max_width, pointer.x - left)))
    height = min(max_height, max(MIN_HEIGHT_PX, min(max_height, pointer.y - top)))
    return replace(field, width=width / page.width, height=height / page.height)


class FieldEditor:
    """Mapping editor state: fields, selection, pointer interaction and save status."""

    def __init__(
        self,
        template_id: str,
        store: TemplateStore,
        fields: Optional[List[Field]] = None,
        page_count: int = 1,
        page_size: Optional[PageSize] = None,
        renderer: Optional[PageRenderer] = None,
        scale: float = 1.5,
    ):
        self.template_id = template_id
        self.store = store
        self.fields: List[Field] = list(fields or [])
        self.page_count = max(1, page_count)
        self.current_page = 0
        self.page_size = page_size or PageSize(*DEFAULT_PAGE_SIZE)
        self.selected_id: Optional[str] = None
        self.interaction: Interaction = IDLE

        self.save_state = SaveState.IDLE
        self.last_error: Optional[str] = None
        self.last_saved_at: Optional[dt.datetime] = None

        self._renderer = renderer
        self._scale = scale
        self._source_bytes: Optional[bytes] = None

    @classmethod
    def from_store(
        cls,
        store: TemplateStore,
        template_id: str,
        renderer: Optional[PageRenderer] = None,
        scale: float = 1.5,
    ) -> "FieldEditor":
        template, fields = store.get(template_id)
        editor = cls(
            template_id,
            store,
            fields=fields,
            page_count=template.source_page_count,
            renderer=renderer if template.source_kind == "pdf" else None,
            scale=scale,
        )
        if editor._renderer is not None:
            editor.go_to_page(0)
        return editor

    # ------------------------------------------------------------------
    # Selection and field CRUD
    # ------------------------------------------------------------------
    @property
    def mode(self) -> Mode:
        return self.interaction.mode

    @property
    def selection(self) -> Optional[Field]:
        return self._find(self.selected_id) if self.selected_id else None

    def page_fields(self, page_index: Optional[int] = None) -> List[Field]:
        page = self.current_page if page_index is None else page_index
        return [f for f in self.fields if f.page == page]

    def add_field(self, page_index: Optional[int] = None) -> Field:
        page = self.current_page if page_index is None else page_index
        if page < 0 or page >= self.page_count:
            raise ValidationError(f"Page {page} outside the template ({self.page_count} pages)")
        field = Field(
            id=f"field-{uuid.uuid4().hex[:12]}",
            type="text",
            data_key="new_field",
            page=page,
            x=0.1,
            y=0.1,
            width=0.3,
            height=0.03,
            font_size=8,
            align="left",
        )
        self.fields.append(field)
        self.selected_id = field.id
        return field

    def select_field(self, field_id: str) -> Field:
        field = self._require(field_id)
        self.selected_id = field.id
        return field

    def deselect(self) -> None:
        self.selected_id = None

    def update_field(self, field_id: str, **changes) -> Field:
        """Merge `changes` (Field attribute names) into the field."""
        current = self._require(field_id)
        editable = set(current.__dataclass_fields__) - {"id"}
        unknown = set(changes) - editable
        if unknown:
            raise ValidationError(f"Cannot update field attribute(s): {', '.join(sorted(unknown))}")
        updated = replace(current, **changes)
        validate_field(updated, self.page_count)
        self._put(updated)
        return updated

    def delete_field(self, field_id: str) -> None:
        self._require(field_id)
        self.fields = [f for f in self.fields if f.id != field_id]
        if self.selected_id == field_id:
            self.selected_id = None
        if self.interaction.field_id == field_id:
            self.interaction = IDLE

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------
    def set_page(self, page_index: int, page_size: Optional[PageSize] = None) -> None:
        if page_index < 0 or page_index >= self.page_count:
            raise ValidationError(f"Page {page_index} outside the template ({self.page_count} pages)")
        self.end_interaction()
        self.current_page = page_index
        if page_size is not None:
            if page_size.width <= 0 or page_size.height <= 0:
                raise ValidationError("Page size must be positive")
            self.page_size = page_size

    def go_to_page(self, page_index: int) -> PageSize:
        """Switch page, taking the pixel size from the page renderer when available."""
        size = None
        if self._renderer is not None:
            if self._source_bytes is None:
                self._source_bytes = self.store.fetch_source_bytes(self.template_id)
            rendered = self._renderer.render_page(self._source_bytes, page_index, self._scale)
            size = PageSize(rendered.pixel_width, rendered.pixel_height)
        self.set_page(page_index, size)
        return self.page_size

    # ------------------------------------------------------------------
    # Pointer interaction
    # ------------------------------------------------------------------
    def begin_drag(self, field_id: str, pointer: Point) -> None:
        field = self.select_field(field_id)
        offset = Point(pointer.x - field.x * self.page_size.width, pointer.y - field.y * self.page_size.height)
        self.interaction = Interaction(Mode.DRAGGING, field.id, offset)

    def begin_resize(self, field_id: str) -> None:
        field = self.select_field(field_id)
        self.interaction = Interaction(Mode.RESIZING, field.id)

    def on_pointer_move(self, pointer: Point) -> Optional[Field]:
        state = self.interaction
        if state.mode is Mode.IDLE:
            return None
        field = self._find(state.field_id)
        if field is None:
            self.interaction = IDLE
            return None
        if state.mode is Mode.DRAGGING:
            updated = drag_to(field, pointer, state.offset, self.page_size)
        else:
            updated = resize_to(field, pointer, self.page_size)
        self._put(updated)
        return updated

    def end_interaction(self) -> None:
        self.interaction = IDLE

    # Bound to the page-wide pointer-up listener as well as the overlay's.
    on_global_pointer_up = end_interaction

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    async def save(self) -> bool:
        """
        Persist the whole mapping. Returns False without saving when a save is
        already pending or when the store rejects it; local edits are kept
        either way.
        """
        if self.save_state is SaveState.PENDING:
            return False
        snapshot = list(self.fields)
        self.save_state = SaveState.PENDING
        self.last_error = None
        try:
            await asyncio.to_thread(self.store.save_mapping, self.template_id, snapshot)
        except asyncio.CancelledError:
            # the worker thread may still finish the write; the outcome is unknown
            self.save_state = SaveState.IDLE
            raise
        except PDFMappingError as exc:
            logger.warning("Saving mapping for %s failed: %s", self.template_id, exc)
            self.save_state = SaveState.ERROR
            self.last_error = str(exc)
            return False
        self.save_state = SaveState.SUCCESS
        self.last_saved_at = dt.datetime.now()
        return True

    def preview_record(self, today: Optional[dt.date] = None, date_format: str = "%d/%m/%Y") -> Dict[str, object]:
        """Sample values for each mapped field, shown in the overlay preview."""
        today = today or dt.date.today()
        samples: Dict[str, object] = {}
        for field in self.fields:
            if field.type == "date":
                samples[field.data_key] = today.strftime(date_format)
            elif field.type == "checkbox":
                samples[field.data_key] = True
            elif field.type == "signature":
                samples[field.data_key] = "Sample signature"
            else:
                samples[field.data_key] = f"Sample {field.data_key}"
        return samples

    # ------------------------------------------------------------------
    def _find(self, field_id: Optional[str]) -> Optional[Field]:
        for field in self.fields:
            if field.id == field_id:
                return field
        return None

    def _require(self, field_id: str) -> Field:
        field = self._find(field_id)
        if field is None:
            raise NotFoundError(f"Field '{field_id}' not found")
        return field

    def _put(self, updated: Field) -> None:
        self.fields = [updated if f.id == updated.id else f for f in self.fields]


class EditorSession:
    """
    Lifetime of one editing session. While open, an autosave task saves the
    mapping every `interval` seconds as long as it is non-empty; the task is
    cancelled when the session closes.
    """

    def __init__(self, editor: FieldEditor, interval: float = 30.0):
        self.editor = editor
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.active:
            self._task = asyncio.create_task(self._autosave_loop())

    async def close(self) -> None:
        self.editor.end_interaction()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def __aenter__(self) -> FieldEditor:
        self.start()
        return self.editor

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.editor.fields:
                logger.debug("Auto-saving mapping for %s", self.editor.template_id)
                await self.editor.save()
