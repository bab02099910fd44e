"""Settlement (baixa) of existing installments from payment receipts.

Exposes:
- find_candidates(store, payment) -> SettlementCandidates
- settle(store, installment_id, payment) -> InstallmentRecord

A receipt does not say which installment it pays. Candidates are unpaid
installments whose amount is close to what the payment implies once
interest, penalty and discount are backed out; an operator approves one
before ``settle`` is called.
"""

import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from core.errors import PersistenceError
from core.models import InstallmentRecord, SettlementPayment
from core.observability.logging import get_logger
from ledger.db import LedgerStore

logger = get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("0.15")
MAX_CANDIDATES = 20


@dataclass
class SettlementCandidates:
    """Installments that may be paid by a receipt."""
    expected_base_cents: int
    min_cents: int
    max_cents: int
    candidates: List[InstallmentRecord] = field(default_factory=list)

    @property
    def auto_selected(self) -> Optional[InstallmentRecord]:
        """The only candidate, when exactly one matches."""
        if len(self.candidates) == 1:
            return self.candidates[0]
        return None

    def to_dict(self) -> dict:
        auto = self.auto_selected
        return {
            "expected_base_cents": self.expected_base_cents,
            "min_cents": self.min_cents,
            "max_cents": self.max_cents,
            "candidates": [c.model_dump(mode="json") for c in self.candidates],
            "auto_selected_id": auto.id if auto else None,
        }


def amount_window(base_cents: int, tolerance: Decimal = AMOUNT_TOLERANCE):
    """Inclusive [min, max] cents within ``tolerance`` of ``base_cents``."""
    base = Decimal(base_cents)
    low = math.floor(base * (1 - tolerance))
    high = math.ceil(base * (1 + tolerance))
    return low, high


def find_candidates(
    store: LedgerStore,
    payment: SettlementPayment,
    limit: int = MAX_CANDIDATES,
) -> SettlementCandidates:
    """Search unpaid installments within 15% of the payment's base amount.

    Results are ordered by due date ascending and capped at ``limit``.
    """
    base = payment.expected_base_cents
    if base <= 0:
        logger.info("Payment base %s is not positive, no candidates", base)
        return SettlementCandidates(expected_base_cents=base, min_cents=0, max_cents=0)

    low, high = amount_window(base)
    candidates = store.search_unpaid_installments(low, high, limit=limit)

    logger.info(
        "Found %d settlement candidate(s)",
        len(candidates),
        extra_fields={"base_cents": base, "min_cents": low, "max_cents": high},
    )
    return SettlementCandidates(
        expected_base_cents=base,
        min_cents=low,
        max_cents=high,
        candidates=candidates,
    )


def settle(store: LedgerStore, installment_id: int, payment: SettlementPayment) -> InstallmentRecord:
    """Mark an approved installment as paid.

    Raises:
        PersistenceError: If the installment does not exist or is already paid
    """
    paid_at = payment.payment_date or date.today()
    if not store.mark_installment_paid(installment_id, paid_at, payment.amount_cents):
        existing = store.get_installment(installment_id)
        if existing is None:
            raise PersistenceError(f"Installment {installment_id} not found")
        raise PersistenceError(f"Installment {installment_id} is already paid")

    logger.info(
        "Settled installment %s",
        installment_id,
        extra_fields={"paid_cents": payment.amount_cents, "paid_at": paid_at.isoformat()},
    )
    return store.get_installment(installment_id)
