"""Review gate tests for AI extracted documents."""

import asyncio
from datetime import date, datetime, timedelta

import pytest

from core.config import Settings
from core.errors import InvalidReviewTransition
from core.models import Installment, PayableDocument, SettlementPayment
from extraction.document_ai import DocumentExtraction, DocumentIntent, ExtractedInstallment, ExtractedObligation
from installments.synthesizer import ScheduleInterval
from pipeline.review import ReviewEdits, ReviewRegistry, ReviewSession, ReviewState


class FakeService:
    def __init__(self, payload):
        self.payload = payload

    async def analyze(self, content, mime_type):
        return self.payload


def obligation(**overrides):
    conta = {
        "descricao": "Material de escritório",
        "numero_nota": "4321",
        "valor_total_centavos": 10000,
        "data_emissao": "2025-01-10",
        "fornecedor_nome_sugerido": "central",
        "fornecedor_cnpj": "12345678000190",
        "categoria_sugerida": "escritório",
    }
    conta.update(overrides)
    return {"intencao": "NOVA_CONTA", "conta_pagar": conta, "parcelas": [], "confianca": 90}


def open_session(store, payload, settings=None):
    session = ReviewSession(store, "scan.jpg", "image/jpeg", settings or Settings())
    asyncio.run(session.extract(b"jpeg-bytes", FakeService(payload)))
    return session


class TestObligationReview:

    def test_extract_prefills_suggestions(self, store):
        vendor_id = store.insert_vendor("12345678000190", "Papelaria Central LTDA", "Central")
        category = store.add_category("Material de escritório")

        session = open_session(store, obligation())

        assert session.state == ReviewState.AWAITING_REVIEW
        assert session.vendor_id == vendor_id
        assert session.category_id == category.id
        assert store.count_documents() == 0

    def test_commit_splits_evenly(self, store):
        session = open_session(store, obligation())
        session.apply_edits(ReviewEdits(installment_count=3, first_due_date=date(2025, 2, 10)))
        session.commit()

        assert session.state == ReviewState.COMMITTED
        document = store.get_document(session.result["document_id"])
        assert document.reference_key == "4321"
        assert document.installment_count == 3
        installments = store.list_installments(document.id)
        assert [i.amount_cents for i in installments] == [3333, 3333, 3334]
        assert [i.due_date for i in installments] == [date(2025, 2, 10), date(2025, 3, 10), date(2025, 4, 10)]

    def test_commit_creates_vendor_from_tax_id(self, store):
        session = open_session(store, obligation())
        session.commit()
        assert session.result["vendor_id"] is not None
        assert store.find_vendor_by_tax_id("12345678000190").legal_name == "central"

    def test_reviewed_installments_are_used(self, store):
        session = open_session(store, obligation())
        session.apply_edits(ReviewEdits(installments=[
            ExtractedInstallment(sequence_number=1, amount_cents=6000, due_date=date(2025, 2, 1)),
            ExtractedInstallment(sequence_number=2, amount_cents=4000),
        ]))
        session.commit()
        installments = store.list_installments(session.result["document_id"])
        assert [i.amount_cents for i in installments] == [6000, 4000]
        assert installments[1].due_date == date(2025, 3, 11)

    def test_weekly_interval(self, store):
        session = open_session(store, obligation())
        session.apply_edits(ReviewEdits(installment_count=2, interval=ScheduleInterval.WEEKLY))
        schedule = session.build_schedule()
        assert [i.due_date for i in schedule] == [date(2025, 1, 10), date(2025, 1, 17)]

    def test_duplicate_commit_fails_and_can_be_edited(self, store):
        store.insert_payable_document(PayableDocument(reference_key="4321", total_cents=10000))
        session = open_session(store, obligation())
        session.commit()

        assert session.state == ReviewState.FAILED
        assert session.error_kind == "DuplicateReference"

        session.apply_edits(ReviewEdits(document_number="4321-A"))
        session.commit()
        assert session.state == ReviewState.COMMITTED

    def test_mismatched_installments_fail(self, store):
        session = open_session(store, obligation())
        session.apply_edits(ReviewEdits(installments=[
            ExtractedInstallment(sequence_number=1, amount_cents=3000),
        ]))
        session.commit()
        assert session.state == ReviewState.FAILED
        assert session.error_kind == "InstallmentSumMismatch"
        assert store.count_documents() == 0

    def test_missing_total_fails(self, store):
        session = open_session(store, obligation(valor_total_centavos=None))
        session.commit()
        assert session.state == ReviewState.FAILED
        assert session.error_kind == "InvalidAmount"

    def test_reference_generated_when_unidentified(self, store):
        session = open_session(store, obligation(numero_nota=None))
        session.commit()
        assert session.result["reference_key"] == f"DOC-{session.id[:12]}"

    def test_commit_twice_is_rejected(self, store):
        session = open_session(store, obligation())
        session.commit()
        with pytest.raises(InvalidReviewTransition):
            session.commit()

    def test_extraction_error_ends_session(self, store):
        session = open_session(store, {"error": "Imagem ilegível"})
        assert session.state == ReviewState.EXTRACT_FAILED
        assert session.error == "Imagem ilegível"
        with pytest.raises(InvalidReviewTransition):
            session.apply_edits(ReviewEdits(total_cents=100))


class TestSettlementReview:

    @pytest.fixture
    def installment_id(self, store):
        document_id = store.insert_payable_document(PayableDocument(reference_key="NF-1", total_cents=10000))
        return store.insert_installments(document_id, [
            Installment(sequence_number=1, amount_cents=10000, due_date=date(2025, 2, 1)),
        ])[0]

    def settlement(self, paid=10300, interest=300):
        return {
            "intencao": "DAR_BAIXA",
            "baixa": {"valor_pago_centavos": paid, "juros_centavos": interest, "data_pagamento": "2025-02-03"},
        }

    def test_single_candidate_is_auto_selected_and_settled(self, store, installment_id):
        session = open_session(store, self.settlement())
        assert session.extraction.intent == DocumentIntent.SETTLEMENT
        assert session.selected_installment_id == installment_id

        session.commit()
        assert session.state == ReviewState.COMMITTED
        record = store.get_installment(installment_id)
        assert record.paid is True
        assert record.paid_cents == 10300
        assert record.paid_at == date(2025, 2, 3)

    def test_commit_requires_selection(self, store):
        session = open_session(store, self.settlement())
        assert session.candidates.candidates == []
        with pytest.raises(ValueError, match="No installment selected"):
            session.commit()
        assert session.state == ReviewState.AWAITING_REVIEW

    def test_payment_edit_refreshes_candidates(self, store, installment_id):
        session = open_session(store, self.settlement(paid=50000, interest=0))
        assert session.selected_installment_id is None
        session.apply_edits(ReviewEdits(payment=SettlementPayment(amount_cents=10000)))
        assert session.selected_installment_id == installment_id


class TestReviewRegistry:

    def test_add_get_remove(self, store):
        registry = ReviewRegistry()
        session = registry.add(ReviewSession(store, "a.png", "image/png"))
        assert registry.get(session.id) is session
        assert len(registry) == 1
        registry.remove(session.id)
        assert registry.get(session.id) is None

    def test_expired_sessions_are_dropped(self, store):
        registry = ReviewRegistry(max_age=timedelta(hours=1))
        old = ReviewSession(store, "old.png", "image/png")
        old.created_at = datetime.utcnow() - timedelta(hours=2)
        registry.add(old)
        fresh = registry.add(ReviewSession(store, "new.png", "image/png"))

        assert registry.get(old.id) is None
        assert registry.get(fresh.id) is fresh
        assert registry.prune(now=datetime.utcnow() + timedelta(hours=2)) == 1
        assert len(registry) == 0


class TestFromExtraction:

    def test_opens_awaiting_review_with_suggestions(self, store):
        vendor_id = store.insert_vendor("12345678000190", "Papelaria Central LTDA")
        extraction = DocumentExtraction(
            document=ExtractedObligation(
                document_number="88", total_cents=3000, suggested_vendor_name="papelaria central"
            ),
        )
        session = ReviewSession.from_extraction(store, "nota.pdf", "application/pdf", extraction)

        assert session.state == ReviewState.AWAITING_REVIEW
        assert session.history == [ReviewState.UPLOADED, ReviewState.EXTRACTING, ReviewState.AWAITING_REVIEW]
        assert session.vendor_id == vendor_id

        session.commit()
        assert session.state == ReviewState.COMMITTED

    def test_number_match_is_scoped_to_the_vendor(self, store):
        other = store.insert_vendor("11111111000111", "Distribuidora Sul LTDA")
        store.insert_payable_document(
            PayableDocument(reference_key="K-1", document_number="88", total_cents=100, vendor_id=other)
        )
        vendor_id = store.insert_vendor("12345678000190", "Papelaria Central LTDA")
        extraction = DocumentExtraction(
            document=ExtractedObligation(document_number="88", access_key="KEY-88", total_cents=3000),
        )
        session = ReviewSession.from_extraction(store, "nota.pdf", "application/pdf", extraction)
        session.apply_edits(ReviewEdits(vendor_id=vendor_id))
        session.commit()
        assert session.state == ReviewState.COMMITTED
