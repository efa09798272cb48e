# tests/test_field_editor.py
"""
Tests for the mapping editor: pointer state machine, geometry bounds,
CRUD operations, saving and the autosave session.
"""

import asyncio
import random
import threading
from unittest.mock import MagicMock

import pytest

from pdf_mapping.exceptions import NotFoundError, PersistenceError, ValidationError
from pdf_mapping.field_editor import (
    MIN_HEIGHT_PX,
    MIN_WIDTH_PX,
    EditorSession,
    FieldEditor,
    Mode,
    PageSize,
    Point,
    SaveState,
)
from pdf_mapping.models import GEOMETRY_EPSILON, Field
from pdf_mapping.page_renderer import PageRenderer

PAGE = PageSize(800, 1131)


@pytest.fixture
def editor(store, pdf_template):
    return FieldEditor(pdf_template.id, store, page_count=2, page_size=PAGE)


def _in_bounds(field: Field) -> bool:
    return (
        field.x >= 0
        and field.y >= 0
        and field.x + field.width <= 1 + GEOMETRY_EPSILON
        and field.y + field.height <= 1 + GEOMETRY_EPSILON
    )


class TestFieldCrud:
    def test_add_field_defaults(self, editor):
        field = editor.add_field()
        assert (field.x, field.y, field.width, field.height) == (0.1, 0.1, 0.3, 0.03)
        assert field.font_size == 8 and field.align == "left" and field.type == "text"
        assert editor.selected_id == field.id

    def test_add_field_on_missing_page(self, editor):
        with pytest.raises(ValidationError):
            editor.add_field(page_index=2)

    def test_update_field_merges_changes(self, editor):
        field = editor.add_field()
        updated = editor.update_field(field.id, data_key="company_name", type="date", font_size=10)
        assert updated.data_key == "company_name"
        assert updated.type == "date"
        assert editor.selection == updated

    def test_update_rejects_unknown_attribute_and_id(self, editor):
        field = editor.add_field()
        with pytest.raises(ValidationError):
            editor.update_field(field.id, colour="red")
        with pytest.raises(ValidationError):
            editor.update_field(field.id, id="other")

    def test_update_rejects_geometry_outside_page(self, editor):
        field = editor.add_field()
        with pytest.raises(ValidationError):
            editor.update_field(field.id, x=0.9)
        assert editor.selection.x == 0.1

    def test_delete_clears_selection(self, editor):
        field = editor.add_field()
        editor.delete_field(field.id)
        assert editor.fields == []
        assert editor.selected_id is None
        with pytest.raises(NotFoundError):
            editor.select_field(field.id)

    def test_page_fields(self, editor):
        first = editor.add_field(0)
        second = editor.add_field(1)
        assert editor.page_fields(0) == [first]
        editor.set_page(1)
        assert editor.page_fields() == [second]


class TestPointerInteraction:
    def test_drag_clamps_at_bottom_right(self, editor):
        # field at (0.5, 0.5) dragged past the remaining extent
        field = editor.add_field()
        editor.update_field(field.id, x=0.5, y=0.5)
        editor.begin_drag(field.id, Point(0.5 * PAGE.width + 10, 0.5 * PAGE.height + 5))
        assert editor.mode is Mode.DRAGGING

        moved = editor.on_pointer_move(Point(5000, 5000))
        assert moved.x == pytest.approx(1 - moved.width, abs=1e-9)
        assert moved.y == pytest.approx(1 - moved.height, abs=1e-9)

    def test_drag_clamps_at_top_left(self, editor):
        field = editor.add_field()
        editor.begin_drag(field.id, Point(100, 120))
        moved = editor.on_pointer_move(Point(-400, -400))
        assert (moved.x, moved.y) == (0.0, 0.0)

    def test_drag_keeps_pointer_offset(self, editor):
        field = editor.add_field()
        editor.begin_drag(field.id, Point(field.x * PAGE.width + 20, field.y * PAGE.height + 4))
        moved = editor.on_pointer_move(Point(420, 404))
        assert moved.x == pytest.approx(400 / PAGE.width)
        assert moved.y == pytest.approx(400 / PAGE.height)

    def test_resize_enforces_minimum_size(self, editor):
        field = editor.add_field()
        editor.begin_resize(field.id)
        resized = editor.on_pointer_move(Point(field.x * PAGE.width + 1, field.y * PAGE.height + 1))
        assert resized.width * PAGE.width == pytest.approx(MIN_WIDTH_PX)
        assert resized.height * PAGE.height == pytest.approx(MIN_HEIGHT_PX)

    def test_resize_stops_at_page_edge(self, editor):
        field = editor.add_field()
        editor.begin_resize(field.id)
        resized = editor.on_pointer_move(Point(10_000, 10_000))
        assert resized.x + resized.width == pytest.approx(1.0)
        assert resized.y + resized.height == pytest.approx(1.0)

    def test_pointer_up_anywhere_ends_interaction(self, editor):
        field = editor.add_field()
        editor.begin_drag(field.id, Point(90, 120))
        editor.on_global_pointer_up()
        assert editor.mode is Mode.IDLE
        assert editor.on_pointer_move(Point(300, 300)) is None
        assert editor.selection == field

    def test_random_gestures_stay_in_bounds(self, editor):
        rng = random.Random(1234)
        fields = [editor.add_field() for _ in range(3)]
        for _ in range(300):
            field = rng.choice(fields)
            if rng.random() < 0.5:
                editor.begin_drag(field.id, Point(rng.uniform(-200, 1000), rng.uniform(-200, 1400)))
            else:
                editor.begin_resize(field.id)
            for _ in range(rng.randint(1, 4)):
                editor.on_pointer_move(Point(rng.uniform(-500, 1500), rng.uniform(-500, 2000)))
            editor.end_interaction()
            for current in editor.fields:
                assert _in_bounds(current)
                assert current.width * PAGE.width >= MIN_WIDTH_PX - 1e-6 or current.x + current.width >= 1 - 1e-9
                assert current.height * PAGE.height >= MIN_HEIGHT_PX - 1e-6 or current.y + current.height >= 1 - 1e-9

    def test_deleting_dragged_field_resets_interaction(self, editor):
        field = editor.add_field()
        editor.begin_drag(field.id, Point(90, 120))
        editor.delete_field(field.id)
        assert editor.mode is Mode.IDLE


class TestPages:
    def test_set_page_out_of_range(self, editor):
        with pytest.raises(ValidationError):
            editor.set_page(2)

    def test_from_store_uses_rendered_page_size(self, store, pdf_template, text_field):
        store.save_mapping(pdf_template.id, [text_field])
        renderer = PageRenderer()
        editor = FieldEditor.from_store(store, pdf_template.id, renderer=renderer, scale=1.0)
        assert editor.fields == [text_field]
        assert editor.page_count == 2

        page = renderer.render_page(store.fetch_source_bytes(pdf_template.id), 0, 1.0)
        assert (editor.page_size.width, editor.page_size.height) == (page.pixel_width, page.pixel_height)
        assert 590 <= page.pixel_width <= 600


class TestSave:
    @pytest.mark.asyncio
    async def test_save_persists_mapping(self, editor, store, pdf_template):
        field = editor.add_field()
        assert await editor.save() is True
        assert editor.save_state is SaveState.SUCCESS
        assert store.get(pdf_template.id)[1] == [field]

    @pytest.mark.asyncio
    async def test_failed_save_keeps_local_edits(self, pdf_template):
        failing_store = MagicMock()
        failing_store.save_mapping.side_effect = PersistenceError("disk full")
        editor = FieldEditor(pdf_template.id, failing_store, page_size=PAGE)
        field = editor.add_field()

        assert await editor.save() is False
        assert editor.save_state is SaveState.ERROR
        assert editor.last_error == "disk full"
        assert editor.fields == [field]

    @pytest.mark.asyncio
    async def test_save_refused_while_pending(self, editor):
        editor.add_field()
        editor.save_state = SaveState.PENDING
        assert await editor.save() is False

    def test_preview_record(self, editor):
        field = editor.add_field()
        editor.update_field(field.id, data_key="company_name")
        check = editor.add_field()
        editor.update_field(check.id, data_key="accept", type="checkbox")
        preview = editor.preview_record()
        assert preview == {"company_name": "Sample company_name", "accept": True}


class TestEditorSession:
    @pytest.mark.asyncio
    async def test_autosave_while_open(self, editor, store, pdf_template):
        field = editor.add_field()
        async with EditorSession(editor, interval=0.01) as session_editor:
            assert session_editor is editor
            await asyncio.sleep(0.3)
        assert store.get(pdf_template.id)[1] == [field]

    @pytest.mark.asyncio
    async def test_autosave_skips_empty_mapping(self, pdf_template):
        idle_store = MagicMock()
        editor = FieldEditor(pdf_template.id, idle_store, page_size=PAGE)
        async with EditorSession(editor, interval=0.01):
            await asyncio.sleep(0.05)
        idle_store.save_mapping.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_cancels_task(self, editor):
        session = EditorSession(editor, interval=60)
        session.start()
        assert session.active
        await session.close()
        assert not session.active

    @pytest.mark.asyncio
    async def test_close_during_autosave_allows_manual_save(self, editor):
        started = threading.Event()
        release = threading.Event()

        def blocking_save(template_id, fields):
            started.set()
            release.wait(5)

        editor.store = MagicMock(save_mapping=MagicMock(side_effect=blocking_save))
        editor.add_field()
        session = EditorSession(editor, interval=0.01)
        session.start()
        assert await asyncio.to_thread(started.wait, 5)
        assert editor.save_state is SaveState.PENDING

        await session.close()
        assert editor.save_state is SaveState.IDLE

        release.set()
        assert await editor.save() is True
        assert editor.save_state is SaveState.SUCCESS
        assert editor.store.save_mapping.call_count == 2
