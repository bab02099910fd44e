"""Installment schedule synthesis.

Builds the payable installments of a document so that their amounts add
up exactly to the document total in cents:

- ``synthesize`` keeps the split stated by the source document and only
  fills in missing due dates.
- ``split_evenly`` builds a schedule from a count and an interval, as the
  manual entry flow does.
- ``adjust_last_installment`` pushes any remaining difference onto the
  last installment.
"""

from datetime import date, timedelta
from enum import Enum
from typing import List, Sequence

from dateutil.relativedelta import relativedelta

from core.errors import InstallmentSumMismatch
from core.models import Installment, RawInstallment, to_cents
from core.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL_DAYS = 30

# Rounding drift tolerated per installment when the source split is trusted
TOLERANCE_CENTS_PER_INSTALLMENT = 1


class ScheduleInterval(str, Enum):
    """Spacing between consecutive due dates."""
    MONTHLY = "monthly"
    BIWEEKLY = "biweekly"
    WEEKLY = "weekly"
    DAYS = "days"


INTERVAL_DAYS = {
    ScheduleInterval.BIWEEKLY: 15,
    ScheduleInterval.WEEKLY: 7,
}


def synthesize(
    total_cents: int,
    installments_raw: Sequence[RawInstallment],
    issue_date: date,
) -> List[Installment]:
    """Produce the payable schedule for an extracted document.

    Due date priority per entry: explicit date, then
    ``issue_date + 30 * sequence`` days for multi-installment documents,
    then ``issue_date`` for a single installment.

    Args:
        total_cents: Document total in cents
        installments_raw: Entries as stated by the source (may be empty)
        issue_date: Document issue date

    Returns:
        Installments numbered 1..n, all unpaid, summing to ``total_cents``

    Raises:
        InstallmentSumMismatch: If the stated amounts differ from the total
            by more than one cent per installment
    """
    if total_cents <= 0:
        raise ValueError("total_cents must be positive")

    if not installments_raw:
        return [Installment(sequence_number=1, amount_cents=total_cents, due_date=issue_date)]

    ordered = sorted(installments_raw, key=lambda raw: raw.sequence)
    n = len(ordered)

    installments = []
    for position, raw in enumerate(ordered, start=1):
        if raw.due_date is not None:
            due_date = raw.due_date
        elif n > 1:
            due_date = issue_date + timedelta(days=DEFAULT_INTERVAL_DAYS * position)
        else:
            due_date = issue_date
        installments.append(Installment(
            sequence_number=position,
            amount_cents=to_cents(raw.amount),
            due_date=due_date,
        ))

    stated = sum(i.amount_cents for i in installments)
    difference = total_cents - stated
    if difference:
        if abs(difference) > TOLERANCE_CENTS_PER_INSTALLMENT * n:
            raise InstallmentSumMismatch(total_cents, stated)
        if installments[-1].amount_cents + difference <= 0:
            raise InstallmentSumMismatch(total_cents, stated)
        logger.debug("Absorbing %s cent rounding difference in last installment", difference)
        installments = adjust_last_installment(installments, total_cents)

    return installments


def split_evenly(
    total_cents: int,
    n: int,
    first_due: date,
    interval: ScheduleInterval = ScheduleInterval.MONTHLY,
    interval_days: int = DEFAULT_INTERVAL_DAYS,
) -> List[Installment]:
    """Split ``total_cents`` into ``n`` installments, remainder on the last.

    >>> [i.amount_cents for i in split_evenly(10000, 3, date(2025, 1, 10))]
    [3333, 3333, 3334]
    """
    if n < 1:
        raise ValueError("n must be at least 1")
    if total_cents <= 0:
        raise ValueError("total_cents must be positive")

    interval = ScheduleInterval(interval)
    base = total_cents // n
    remainder = total_cents - base * n

    installments = []
    for i in range(n):
        installments.append(Installment(
            sequence_number=i + 1,
            amount_cents=base + remainder if i == n - 1 else base,
            due_date=due_date_for(first_due, i, interval, interval_days),
        ))
    return installments


def due_date_for(
    first_due: date,
    offset: int,
    interval: ScheduleInterval,
    interval_days: int = DEFAULT_INTERVAL_DAYS,
) -> date:
    """Due date of the installment ``offset`` steps after the first."""
    if interval == ScheduleInterval.MONTHLY:
        # Day-of-month clamps to the end of shorter months
        return first_due + relativedelta(months=offset)
    if interval == ScheduleInterval.DAYS:
        if interval_days < 1:
            raise ValueError("interval_days must be at least 1")
        return first_due + timedelta(days=interval_days * offset)
    return first_due + timedelta(days=INTERVAL_DAYS[interval] * offset)


def schedule_difference(installments: Sequence[Installment], total_cents: int) -> int:
    """Cents still missing (positive) or exceeding (negative) the total."""
    return total_cents - sum(i.amount_cents for i in installments)


def adjust_last_installment(installments: Sequence[Installment], total_cents: int) -> List[Installment]:
    """Return a copy where the last installment absorbs the difference to the total."""
    adjusted = [i.model_copy() for i in installments]
    if not adjusted:
        return adjusted
    difference = schedule_difference(adjusted, total_cents)
    if difference:
        last = adjusted[-1]
        adjusted[-1] = last.model_copy(update={"amount_cents": last.amount_cents + difference})
    return adjusted


def validate_schedule(installments: Sequence[Installment], total_cents: int) -> None:
    """Check numbering is 1..n and the amounts add up to the total.

    Raises:
        InstallmentSumMismatch: If the sum differs from ``total_cents``
        ValueError: If numbering has gaps or amounts are not positive
    """
    if not installments:
        raise ValueError("Schedule has no installments")
    numbers = [i.sequence_number for i in installments]
    if numbers != list(range(1, len(installments) + 1)):
        raise ValueError(f"Installment numbers must be 1..{len(installments)}, got {numbers}")
    if any(i.amount_cents <= 0 for i in installments):
        raise ValueError("Installment amounts must be positive")
    stated = sum(i.amount_cents for i in installments)
    if stated != total_cents:
        raise InstallmentSumMismatch(total_cents, stated)
