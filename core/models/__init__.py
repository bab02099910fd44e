"""Core data models for fiscal document ingestion."""

from core.models.fiscal import (
    # Base
    CanonicalBase,
    DecimalValue,
    DateValue,
    # Helpers
    parse_decimal,
    parse_date,
    to_cents,
    from_cents,
    only_digits,
    # Extraction
    RawInstallment,
    FiscalDocument,
    # Ledger
    Installment,
    InstallmentRecord,
    Vendor,
    Category,
    PayableDocument,
    SettlementPayment,
)

__all__ = [
    "CanonicalBase",
    "DecimalValue",
    "DateValue",
    "parse_decimal",
    "parse_date",
    "to_cents",
    "from_cents",
    "only_digits",
    "RawInstallment",
    "FiscalDocument",
    "Installment",
    "InstallmentRecord",
    "Vendor",
    "Category",
    "PayableDocument",
    "SettlementPayment",
]
