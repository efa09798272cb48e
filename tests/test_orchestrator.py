# tests/test_orchestrator.py
"""
Tests for GenerationOrchestrator and the generation capabilities it drives.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from pdf_mapping.exceptions import (
    NotFoundError,
    PersistenceError,
    RenderError,
    SubmissionPendingError,
    ValidationError,
)
from pdf_mapping.fill_engine import TemplateFillEngine
from pdf_mapping.generation import LocalGenerator, RemoteGenerator
from pdf_mapping.ledger import FileDocumentLedger, OutputStore
from pdf_mapping.orchestrator import GenerationOrchestrator, document_filename
from pdf_mapping.paginated_renderer import PaginatedRenderer


@pytest.fixture
def ledger(tmp_path):
    return FileDocumentLedger(tmp_path)


@pytest.fixture
def output_store(tmp_path):
    return OutputStore(tmp_path)


@pytest.fixture
def local_generator(store):
    return LocalGenerator(store, TemplateFillEngine(), PaginatedRenderer())


def _orchestrator(store, generator, ledger, output_store, download=None):
    return GenerationOrchestrator(store, generator, TemplateFillEngine(), ledger, output_store, download=download)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_two_submits_create_two_documents(self, store, html_template, local_generator, ledger, output_store):
        orchestrator = _orchestrator(store, local_generator, ledger, output_store)
        record = {"company_name": "Acme Srl"}

        first = await orchestrator.submit(html_template.id, record)
        record["company_name"] = "Beta SpA"
        second = await orchestrator.submit(html_template.id, record)

        assert first.document_id != second.document_id
        assert ledger.get_document(first.document_id).record == {"company_name": "Acme Srl"}
        assert ledger.get_document(second.document_id).record == {"company_name": "Beta SpA"}
        assert output_store.get(first.output_ref).startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_download_hook_receives_file(self, store, html_template, local_generator, ledger, output_store):
        download = MagicMock()
        orchestrator = _orchestrator(store, local_generator, ledger, output_store, download=download)
        submission = await orchestrator.submit(html_template.id, {"company_name": "Acme Srl"})

        filename, data = download.call_args[0]
        assert filename == "contract-Acme_Srl-Performance_contract.pdf" == submission.filename
        assert data.startswith(b"%PDF")
        assert submission.size == len(data)

    @pytest.mark.asyncio
    async def test_download_hook_runs_after_document_recorded(self, store, pdf_template, ledger, output_store):
        seen = []

        def download(filename, data):
            seen.extend(ledger.list_documents())

        generator = MagicMock(generate=AsyncMock(return_value=b"%PDF-1.4 stub"))
        orchestrator = _orchestrator(store, generator, ledger, output_store, download=download)
        submission = await orchestrator.submit(pdf_template.id, {"company_name": "Acme"})
        assert [d.id for d in seen] == [submission.document_id]

    @pytest.mark.asyncio
    async def test_ledger_failure_removes_output_and_skips_download(self, store, pdf_template, tmp_path, output_store):
        download = MagicMock()
        failing_ledger = MagicMock(create_document_record=MagicMock(side_effect=PersistenceError("disk full")))
        generator = MagicMock(generate=AsyncMock(return_value=b"%PDF-1.4 stub"))
        orchestrator = _orchestrator(store, generator, failing_ledger, output_store, download=download)
        with pytest.raises(PersistenceError):
            await orchestrator.submit(pdf_template.id, {"company_name": "Acme"})
        download.assert_not_called()
        assert list((tmp_path / "generated").glob("*.pdf")) == []
        assert not orchestrator.is_pending

    @pytest.mark.asyncio
    async def test_async_download_hook_is_awaited(self, store, pdf_template, ledger, output_store):
        download = AsyncMock()
        generator = MagicMock(generate=AsyncMock(return_value=b"%PDF-1.4 stub"))
        orchestrator = _orchestrator(store, generator, ledger, output_store, download=download)
        await orchestrator.submit(pdf_template.id, {})
        download.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_required_field(self, store, pdf_template, ledger, output_store):
        generator = MagicMock(generate=AsyncMock(return_value=b"%PDF"))
        orchestrator = _orchestrator(store, generator, ledger, output_store)
        with pytest.raises(ValidationError):
            await orchestrator.submit(pdf_template.id, {"company_name": "  "}, required=["company_name"])
        generator.generate.assert_not_called()
        assert ledger.list_documents() == []

    @pytest.mark.asyncio
    async def test_boolean_required_counts_as_present(self, store, pdf_template, ledger, output_store):
        generator = MagicMock(generate=AsyncMock(return_value=b"%PDF"))
        orchestrator = _orchestrator(store, generator, ledger, output_store)
        await orchestrator.submit(pdf_template.id, {"accept": False}, required=["accept"])
        assert len(ledger.list_documents()) == 1

    @pytest.mark.asyncio
    async def test_no_template_selected(self, store, ledger, output_store):
        orchestrator = _orchestrator(store, MagicMock(), ledger, output_store)
        with pytest.raises(ValidationError):
            await orchestrator.submit(None, {"company_name": "Acme"})

    @pytest.mark.asyncio
    async def test_failure_creates_no_document(self, store, pdf_template, ledger, output_store):
        download = MagicMock()
        generator = MagicMock(generate=AsyncMock(side_effect=RenderError("layout failed")))
        orchestrator = _orchestrator(store, generator, ledger, output_store, download=download)
        with pytest.raises(RenderError):
            await orchestrator.submit(pdf_template.id, {"company_name": "Acme"})
        download.assert_not_called()
        assert ledger.list_documents() == []
        assert not orchestrator.is_pending

    @pytest.mark.asyncio
    async def test_second_submit_while_pending(self, store, pdf_template, ledger, output_store):
        release = asyncio.Event()

        async def slow_generate(template_id, record):
            await release.wait()
            return b"%PDF-1.4 slow"

        orchestrator = _orchestrator(store, MagicMock(generate=slow_generate), ledger, output_store)
        task = asyncio.create_task(orchestrator.submit(pdf_template.id, {}))
        await asyncio.sleep(0.05)
        assert orchestrator.is_pending
        with pytest.raises(SubmissionPendingError):
            await orchestrator.submit(pdf_template.id, {})

        release.set()
        await task
        assert not orchestrator.is_pending
        assert len(ledger.list_documents()) == 1


class TestRecordInit:
    def test_init_record_uses_loaded_mapping(self, store, pdf_template, text_field, ledger, output_store):
        store.save_mapping(pdf_template.id, [text_field])
        orchestrator = _orchestrator(store, MagicMock(), ledger, output_store)
        template, fields = orchestrator.load_template(pdf_template.id)
        assert fields == [text_field]
        assert orchestrator.init_record(context={"company_name": "Acme"}) == {"company_name": "Acme"}

    def test_document_filename_defaults(self, pdf_template):
        assert document_filename(pdf_template, {}) == "contract-new-Service_agreement.pdf"


class TestGenerators:
    @pytest.mark.asyncio
    async def test_local_generator_positional(self, store, pdf_template, text_field, local_generator):
        store.save_mapping(pdf_template.id, [text_field])
        pdf_bytes = await local_generator.generate(pdf_template.id, {"company_name": "Acme Srl"})
        assert pdf_bytes.startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_local_generator_unknown_template(self, local_generator):
        with pytest.raises(NotFoundError):
            await local_generator.generate("missing", {})

    @pytest.mark.asyncio
    async def test_remote_generator_posts_record(self):
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=200, content=b"%PDF-remote")
        generator = RemoteGenerator("https://pdf.example.com/", session=session)

        assert await generator.generate("t1", {"company_name": "Acme"}) == b"%PDF-remote"
        session.post.assert_called_once_with(
            "https://pdf.example.com/pdf/render",
            json={"template_id": "t1", "record": {"company_name": "Acme"}},
            timeout=generator.timeout,
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [(404, NotFoundError), (400, ValidationError), (500, RenderError)],
    )
    async def test_remote_generator_status_errors(self, status, error):
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=status, content=b"", json=MagicMock(return_value={"detail": "x"}))
        with pytest.raises(error):
            await RemoteGenerator("https://pdf.example.com", session=session).generate("t1", {})

    @pytest.mark.asyncio
    async def test_remote_transport_failure(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(PersistenceError):
            await RemoteGenerator("https://pdf.example.com", session=session).generate("t1", {})
