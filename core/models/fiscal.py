"""Fiscal document and ledger data models.

Extraction works in currency units (``Decimal``); the ledger stores integer
minor units (cents). ``to_cents`` is the only crossing point between the two.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Value Parsers (XML text, LLM output and form input)
# =============================================================================

def parse_decimal(value):
    """Parse decimal from XML text, LLM output or Brazilian formatted strings."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not an amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip().replace("R$", "").replace(" ", "")
        if s == "":
            return None
        if "," in s and "." in s:
            # 1.234,56
            s = s.replace(".", "").replace(",", ".")
        elif "," in s:
            s = s.replace(",", ".")
        try:
            return Decimal(s)
        except InvalidOperation:
            raise ValueError(f"Cannot parse amount: {value}")
    return value


def parse_date(value):
    """Parse date from ISO, ISO datetime or dd/mm/yyyy strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        # dhEmi carries a time and offset; only the date portion matters
        s = s.split("T")[0]
        for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
            try:
                return datetime.strptime(s, fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Cannot parse date: {value}")
    return value


DecimalValue = Annotated[Decimal, BeforeValidator(parse_decimal)]
DateValue = Annotated[date, BeforeValidator(parse_date)]


def to_cents(amount) -> int:
    """Convert a currency amount to integer minor units (half-up)."""
    value = parse_decimal(amount)
    if value is None:
        raise ValueError("Amount is required")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer minor units back to a currency amount."""
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def only_digits(value: Optional[str]) -> str:
    """Strip punctuation from a tax ID (CNPJ/CPF)."""
    if not value:
        return ""
    return "".join(ch for ch in value if ch.isdigit())


# =============================================================================
# Base Model
# =============================================================================

class CanonicalBase(BaseModel):
    """Base model for all pipeline data structures."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Extraction Models
# =============================================================================

class RawInstallment(CanonicalBase):
    """An installment entry as stated by the source document (cobr/dup)."""
    sequence: int = Field(..., ge=1)
    amount: DecimalValue
    due_date: Optional[DateValue] = None
    label: Optional[str] = Field(default=None, description="Source numbering (nDup)")


class FiscalDocument(CanonicalBase):
    """Normalized electronic invoice produced by an extractor.

    Ephemeral: created and consumed within one file's processing.
    """
    document_number: Optional[str] = None
    access_key: Optional[str] = None
    issuer_tax_id: str
    issuer_legal_name: str
    issuer_trade_name: Optional[str] = None
    total_amount: DecimalValue
    issue_date: DateValue = Field(default_factory=date.today)
    installments_raw: List[RawInstallment] = Field(default_factory=list)
    source_filename: Optional[str] = None

    @field_validator("total_amount")
    @classmethod
    def _positive_total(cls, value: Decimal) -> Decimal:
        if not value.is_finite() or value <= 0:
            raise ValueError("total_amount must be a positive finite number")
        return value

    @model_validator(mode="after")
    def _identifiable(self) -> "FiscalDocument":
        if not (self.document_number or self.access_key):
            raise ValueError("document_number or access_key is required")
        return self

    @property
    def total_cents(self) -> int:
        return to_cents(self.total_amount)

    @property
    def reference_key(self) -> str:
        """Unique reference stored on the payable document (access key preferred)."""
        return self.access_key or self.document_number or ""


# =============================================================================
# Ledger Models
# =============================================================================

class Installment(CanonicalBase):
    """A synthesized payable installment."""
    sequence_number: int = Field(..., ge=1)
    amount_cents: int
    due_date: DateValue
    paid: bool = False


class Vendor(CanonicalBase):
    """Legal-entity vendor, unique by tax ID."""
    id: Optional[int] = None
    tax_id: str
    legal_name: str
    trade_name: Optional[str] = None
    active: bool = True
    created_at: Optional[datetime] = None


class Category(CanonicalBase):
    """Expense category used for pre-filling AI extracted documents."""
    id: Optional[int] = None
    name: str


class PayableDocument(CanonicalBase):
    """Accounts-payable header row."""
    id: Optional[int] = None
    reference_key: str
    document_number: Optional[str] = None
    access_key: Optional[str] = None
    total_cents: int
    vendor_id: Optional[int] = None
    installment_count: int = 1
    description: str = ""
    reference: Optional[str] = None
    issue_date: Optional[DateValue] = None
    category_id: Optional[int] = None
    branch_id: Optional[int] = None
    created_at: Optional[datetime] = None


class InstallmentRecord(Installment):
    """Installment row as persisted in the ledger."""
    id: Optional[int] = None
    document_id: int
    paid_at: Optional[DateValue] = None
    paid_cents: Optional[int] = None


class SettlementPayment(CanonicalBase):
    """Payment read from a receipt, used to settle an existing installment."""
    amount_cents: int = Field(..., ge=0)
    payment_date: Optional[DateValue] = None
    interest_cents: int = 0
    discount_cents: int = 0
    penalty_cents: int = 0
    reference_hint: Optional[str] = None

    @property
    def expected_base_cents(self) -> int:
        """Installment amount implied by the payment: paid - interest - penalty + discount."""
        return self.amount_cents - self.interest_cents - self.penalty_cents + self.discount_cents
