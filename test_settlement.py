"""Settlement candidate search and installment settlement tests."""

from datetime import date

import pytest

from core.errors import PersistenceError
from core.models import Installment, PayableDocument, SettlementPayment
from reconciliation.settlement import amount_window, find_candidates, settle


@pytest.fixture
def ledger(store):
    """Ledger with one document split into 10000, 10000, 12000 and one of 50000."""
    first = store.insert_payable_document(PayableDocument(reference_key="A", total_cents=32000))
    store.insert_installments(first, [
        Installment(sequence_number=1, amount_cents=10000, due_date=date(2024, 3, 1)),
        Installment(sequence_number=2, amount_cents=10000, due_date=date(2024, 2, 1)),
        Installment(sequence_number=3, amount_cents=12000, due_date=date(2024, 4, 1)),
    ])
    second = store.insert_payable_document(PayableDocument(reference_key="B", total_cents=50000))
    store.insert_installments(second, [
        Installment(sequence_number=1, amount_cents=50000, due_date=date(2024, 1, 1)),
    ])
    return store


class TestAmountWindow:

    def test_fifteen_percent(self):
        assert amount_window(10000) == (8500, 11500)

    def test_rounds_outward(self):
        assert amount_window(101) == (85, 117)


class TestFindCandidates:

    def test_ordered_by_due_date(self, ledger):
        result = find_candidates(ledger, SettlementPayment(amount_cents=10500))
        assert [c.amount_cents for c in result.candidates] == [10000, 10000, 12000]
        assert [c.due_date for c in result.candidates] == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]
        assert result.auto_selected is None

    def test_interest_and_discount_are_backed_out(self, ledger):
        payment = SettlementPayment(amount_cents=52000, interest_cents=1500, penalty_cents=1000, discount_cents=500)
        result = find_candidates(ledger, payment)
        assert result.expected_base_cents == 50000
        assert len(result.candidates) == 1
        assert result.auto_selected.amount_cents == 50000
        assert result.to_dict()["auto_selected_id"] == result.auto_selected.id

    def test_limit(self, ledger):
        result = find_candidates(ledger, SettlementPayment(amount_cents=10500), limit=2)
        assert len(result.candidates) == 2

    def test_non_positive_base(self, ledger):
        result = find_candidates(ledger, SettlementPayment(amount_cents=100, interest_cents=200))
        assert result.candidates == []

    def test_paid_installments_are_excluded(self, ledger):
        target = find_candidates(ledger, SettlementPayment(amount_cents=50000)).auto_selected
        settle(ledger, target.id, SettlementPayment(amount_cents=50000))
        assert find_candidates(ledger, SettlementPayment(amount_cents=50000)).candidates == []


class TestSettle:

    def test_marks_paid(self, ledger):
        target = find_candidates(ledger, SettlementPayment(amount_cents=50000)).auto_selected
        record = settle(ledger, target.id, SettlementPayment(amount_cents=51000, payment_date=date(2024, 1, 5)))
        assert record.paid is True
        assert record.paid_at == date(2024, 1, 5)
        assert record.paid_cents == 51000

    def test_already_paid(self, ledger):
        target = find_candidates(ledger, SettlementPayment(amount_cents=50000)).auto_selected
        settle(ledger, target.id, SettlementPayment(amount_cents=50000))
        with pytest.raises(PersistenceError, match="already paid"):
            settle(ledger, target.id, SettlementPayment(amount_cents=50000))

    def test_unknown_installment(self, ledger):
        with pytest.raises(PersistenceError, match="not found"):
            settle(ledger, 9999, SettlementPayment(amount_cents=100))
