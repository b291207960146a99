"""Tests for the extraction orchestrator's test and production paths."""
import asyncio
import uuid

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from invoice_processing.models.extraction_prompt import ExtractionPrompt
from invoice_processing.models.invoice import Invoice, ReviewStatus
from invoice_processing.modules.extraction.exceptions import UnsupportedDocument
from invoice_processing.modules.extraction.prompts.activation import ActivationManager
from invoice_processing.modules.extraction.prompts.defaults import (
    BASE_TEMPLATE_PROMPT,
    DEFAULT_EXTRACTION_PROMPT,
    seed_base_template,
)
from invoice_processing.modules.extraction.prompts.store import PromptStore
from invoice_processing.modules.extraction.schemas import AttemptState
from invoice_processing.modules.extraction.services.guard import DuplicateConfidenceGuard
from invoice_processing.modules.extraction.services.orchestrator import (
    AttemptStateError,
    ExtractionAttempt,
    ExtractionOrchestrator,
)

PROMPT_TEXT = "Extract invoice_header, line_items, invoice_number and customer_name as JSON."
DOCUMENT = b"INVOICE INV-100\nBill to: Acme Corp\nConsulting 2 x 125.00\nTotal 250.00"


@pytest.fixture
def cache(document_cache):
    return document_cache


@pytest.fixture
def sandbox_orchestrator(text_extractor, ai_extractor, cache, locks):
    return ExtractionOrchestrator(
        text_extractor=text_extractor,
        ai_extractor=ai_extractor,
        cache=cache,
        locks=locks,
        ai_timeout_seconds=0.2,
        low_confidence_threshold=0.7,
    )


@pytest.fixture
def production_orchestrator(test_db, text_extractor, ai_extractor, locks):
    return ExtractionOrchestrator(
        text_extractor=text_extractor,
        ai_extractor=ai_extractor,
        db=test_db,
        activation=ActivationManager(test_db, locks),
        guard=DuplicateConfidenceGuard(
            test_db, key_fields=("invoice_number", "total_amount"), low_confidence_threshold=0.7
        ),
        locks=locks,
        ai_timeout_seconds=0.2,
        low_confidence_threshold=0.7,
    )


async def _invoice_count(db):
    return (await db.execute(select(func.count()).select_from(Invoice))).scalar_one()


class TestExtractionAttempt:
    def test_happy_path_transitions(self):
        attempt = ExtractionAttempt("test")
        for state in (
            AttemptState.TEXT_RESOLVED,
            AttemptState.PROMPT_VALIDATED,
            AttemptState.AI_INVOKED,
            AttemptState.SUCCEEDED,
        ):
            attempt.advance(state)
        assert attempt.is_terminal

    def test_cannot_skip_validation(self):
        attempt = ExtractionAttempt("test")
        attempt.advance(AttemptState.TEXT_RESOLVED)
        with pytest.raises(AttemptStateError):
            attempt.advance(AttemptState.AI_INVOKED)

    def test_terminal_states_are_final(self):
        attempt = ExtractionAttempt("production")
        attempt.fail("unsupported_document")
        assert attempt.failure_kind == "unsupported_document"
        with pytest.raises(AttemptStateError):
            attempt.advance(AttemptState.TEXT_RESOLVED)


class TestRunTest:
    async def test_success(self, sandbox_orchestrator, cache, ai_extractor, invoice_data):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        prompt_id = uuid.uuid4()

        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id, prompt_id=prompt_id)

        assert result.success is True
        assert result.state == AttemptState.SUCCEEDED
        assert result.extracted_data == invoice_data()
        assert result.confidence_score == 0.95
        assert result.processing_time_ms is not None
        assert result.error is None
        assert result.prompt_id == prompt_id
        assert result.status_code == 200
        assert ai_extractor.calls == 1
        assert ai_extractor.prompts == [PROMPT_TEXT]

    async def test_missing_line_items_never_calls_ai(self, sandbox_orchestrator, cache, ai_extractor):
        session = await cache.put(DOCUMENT, "invoice.pdf")

        result = await sandbox_orchestrator.run_test(
            "Extract invoice_header, invoice_number and customer_name.", session.temp_file_id
        )

        assert result.success is False
        assert result.state == AttemptState.FAILED
        assert result.error.kind == "prompt_validation_failed"
        assert result.error.details == {"missing": ["line_items"]}
        assert result.status_code == 400
        assert ai_extractor.calls == 0

    async def test_totals_prompt_reports_missing_concepts(self, sandbox_orchestrator, cache, ai_extractor):
        session = await cache.put(DOCUMENT, "invoice.pdf")

        result = await sandbox_orchestrator.run_test("extract the totals", session.temp_file_id)

        assert result.error.details["missing"] == ["line_items", "invoice_number", "customer_name"]
        assert ai_extractor.calls == 0

    async def test_expired_handle(self, sandbox_orchestrator, ai_extractor):
        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, "expired-or-unknown")

        assert result.error.kind == "expired_or_missing_content"
        assert result.status_code == 404
        assert ai_extractor.calls == 0

    async def test_retry_after_failure_reuses_cached_text(
        self, sandbox_orchestrator, cache, text_extractor, ai_extractor
    ):
        session = await cache.put(DOCUMENT, "invoice.pdf")

        first = await sandbox_orchestrator.run_test("extract the totals", session.temp_file_id)
        second = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)

        assert first.success is False
        assert second.success is True
        assert text_extractor.calls == 1

    async def test_ai_timeout(self, sandbox_orchestrator, cache, ai_extractor):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        ai_extractor.delay = 5

        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)

        assert result.error.kind == "upstream_extraction_failed"
        assert "timed out" in result.error.message
        assert result.status_code == 502
        assert result.processing_time_ms is not None

    async def test_ai_unexpected_error_is_classified(self, sandbox_orchestrator, cache, ai_extractor):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        ai_extractor.error = ConnectionResetError("peer reset")

        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)

        assert result.error.kind == "upstream_extraction_failed"
        assert ai_extractor.calls == 1

    @pytest.mark.parametrize("score", [1.5, -0.1])
    async def test_confidence_out_of_range_rejected(
        self, sandbox_orchestrator, cache, ai_extractor, score
    ):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        ai_extractor.confidence = score

        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)

        assert result.error.kind == "upstream_extraction_failed"

    async def test_low_confidence_reported(self, sandbox_orchestrator, cache, ai_extractor):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        ai_extractor.confidence = 0.42

        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)

        assert result.success is True
        assert result.low_confidence is True

    async def test_run_test_persists_nothing(self, sandbox_orchestrator, cache, test_db):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)
        assert await _invoice_count(test_db) == 0

    async def test_cache_outage_is_classified(self, sandbox_orchestrator, cache, fake_redis, ai_extractor):
        session = await cache.put(DOCUMENT, "invoice.pdf")
        fake_redis.error = RedisConnectionError("Connection refused")

        result = await sandbox_orchestrator.run_test(PROMPT_TEXT, session.temp_file_id)

        assert result.error.kind == "document_cache_unavailable"
        assert result.status_code == 503
        assert ai_extractor.calls == 0


class TestRunProduction:
    async def test_persists_invoice_with_active_prompt(
        self, production_orchestrator, test_db, locks, vendor, ai_extractor
    ):
        store = PromptStore(test_db, locks)
        prompt = await store.create("Acme", PROMPT_TEXT + " Vendor specific.", vendor_id=vendor.id)
        await ActivationManager(test_db, locks).activate(prompt.id)

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.success is True
        assert result.state == AttemptState.SUCCEEDED
        assert result.prompt_id == prompt.id
        assert ai_extractor.prompts == [prompt.prompt_text]
        assert result.invoice.invoice_number == "INV-100"
        assert result.invoice.line_items_count == 1
        assert result.invoice.review_status == ReviewStatus.APPROVED
        assert result.invoice.vendor_name == "Acme Supplies"

        invoice = await test_db.get(Invoice, result.invoice.id)
        assert invoice.prompt_id == prompt.id
        assert invoice.customer_name == "Acme Corp"
        assert invoice.file_type == "pdf"
        assert invoice.line_items[0].description == "Consulting services"

    async def test_falls_back_to_base_template(
        self, production_orchestrator, test_db, vendor, ai_extractor
    ):
        await seed_base_template(test_db)

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.success is True
        assert ai_extractor.prompts == [BASE_TEMPLATE_PROMPT]

    async def test_falls_back_to_default_prompt(
        self, production_orchestrator, vendor, ai_extractor
    ):
        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.success is True
        assert result.prompt_id is None
        assert ai_extractor.prompts == [DEFAULT_EXTRACTION_PROMPT]

    async def test_duplicate_upload_rejected(
        self, production_orchestrator, test_db, vendor, invoice_data
    ):
        first = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")
        second = await production_orchestrator.run_production(vendor.id, DOCUMENT, "copy.pdf")

        assert first.success is True
        assert second.success is False
        assert second.error.kind == "duplicate_detected"
        assert second.error.details["duplicate_of"] == str(first.invoice.id)
        assert second.extracted_data == invoice_data()
        assert second.status_code == 409
        assert await _invoice_count(test_db) == 1

    async def test_concurrent_duplicate_uploads_store_one(
        self, test_db, session_factory, text_extractor, ai_extractor, locks, vendor
    ):
        async def upload(name):
            async with session_factory() as session:
                orchestrator = ExtractionOrchestrator(
                    text_extractor=text_extractor,
                    ai_extractor=ai_extractor,
                    db=session,
                    activation=ActivationManager(session, locks),
                    guard=DuplicateConfidenceGuard(session),
                    locks=locks,
                )
                return await orchestrator.run_production(vendor.id, DOCUMENT, name)

        results = await asyncio.gather(upload("a.pdf"), upload("b.pdf"))

        assert sorted(r.success for r in results) == [False, True]
        assert await _invoice_count(test_db) == 1

    async def test_low_confidence_persisted_for_review(
        self, production_orchestrator, test_db, vendor, ai_extractor
    ):
        ai_extractor.confidence = 0.42

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.success is True
        assert result.low_confidence is True
        assert "Low confidence 0.42 (threshold 0.70); flagged for review" in result.warnings
        invoice = await test_db.get(Invoice, result.invoice.id)
        assert invoice.review_status == ReviewStatus.NEEDS_REVIEW
        assert invoice.confidence_score == 0.42

    async def test_data_warnings_included(
        self, production_orchestrator, vendor, ai_extractor, invoice_data
    ):
        ai_extractor.data = invoice_data(total_amount="400.00")

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.success is True
        assert "Line item total 250.00 does not match invoice total 400.00" in result.warnings

    async def test_unknown_vendor(self, production_orchestrator, test_db, text_extractor):
        result = await production_orchestrator.run_production(uuid.uuid4(), DOCUMENT, "invoice.pdf")

        assert result.error.kind == "vendor_not_found"
        assert result.status_code == 404
        assert text_extractor.calls == 0

    async def test_inactive_vendor(self, production_orchestrator, test_db, vendor):
        vendor.active = False
        await test_db.commit()

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.error.kind == "vendor_not_found"

    async def test_unsupported_document(
        self, production_orchestrator, test_db, vendor, text_extractor, ai_extractor
    ):
        text_extractor.error = UnsupportedDocument("Failed to read PDF")

        result = await production_orchestrator.run_production(vendor.id, b"junk", "invoice.pdf")

        assert result.error.kind == "unsupported_document"
        assert result.status_code == 502
        assert ai_extractor.calls == 0
        assert await _invoice_count(test_db) == 0

    async def test_invalid_active_prompt_blocks_ai_call(
        self, production_orchestrator, test_db, locks, vendor, ai_extractor
    ):
        prompt = ExtractionPrompt(
            vendor_id=vendor.id,
            prompt_name="Broken",
            prompt_text="Summarize the document",
            version=1,
            chain_root_id=uuid.uuid4(),
        )
        test_db.add(prompt)
        await test_db.commit()
        await ActivationManager(test_db, locks).activate(prompt.id)

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.error.kind == "prompt_validation_failed"
        assert ai_extractor.calls == 0
        assert await _invoice_count(test_db) == 0

    async def test_upstream_failure_persists_nothing(
        self, production_orchestrator, test_db, vendor, ai_extractor
    ):
        ai_extractor.delay = 5

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.error.kind == "upstream_extraction_failed"
        assert await _invoice_count(test_db) == 0

    async def test_non_integer_line_numbers_fall_back_to_position(
        self, production_orchestrator, test_db, vendor, ai_extractor, invoice_data
    ):
        item = {"description": "Consulting", "quantity": 1, "unit_price": 125.0, "total_amount": 125.0}
        ai_extractor.data = invoice_data(
            line_items=[
                dict(item, line_number={"page": 1, "row": 3}),
                dict(item, line_number="2"),
                dict(item, line_number="n/a"),
            ]
        )

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "a.pdf")

        assert result.success is True
        invoice = await test_db.get(Invoice, result.invoice.id)
        assert sorted(li.line_number for li in invoice.line_items) == [1, 2, 3]

    async def test_overlong_fields_cut_to_column_length(
        self, production_orchestrator, test_db, vendor, ai_extractor, invoice_data
    ):
        ai_extractor.data = invoice_data(invoice_number="X" * 150)

        first = await production_orchestrator.run_production(vendor.id, DOCUMENT, "y" * 300 + ".pdf")
        second = await production_orchestrator.run_production(vendor.id, DOCUMENT, "copy.pdf")

        assert first.success is True
        invoice = await test_db.get(Invoice, first.invoice.id)
        assert invoice.invoice_number == "X" * 100
        assert len(invoice.original_filename) == 255
        # The duplicate key is cut the same way, so the stored row still matches
        assert second.error.kind == "duplicate_detected"

    async def test_database_failure_is_classified(
        self, production_orchestrator, test_db, vendor, monkeypatch
    ):
        async def failing_commit():
            raise OperationalError("INSERT INTO invoices", {}, Exception("disk I/O error"))

        monkeypatch.setattr(test_db, "commit", failing_commit)

        result = await production_orchestrator.run_production(vendor.id, DOCUMENT, "invoice.pdf")

        assert result.success is False
        assert result.state == AttemptState.FAILED
        assert result.error.kind == "persistence_failed"
        assert result.status_code == 500
        assert result.confidence_score == 0.95
        monkeypatch.undo()
        assert await _invoice_count(test_db) == 0
