"""Error hierarchy for the fiscal document ingestion pipeline.

Every error carries a human-readable message and a ``kind`` (the class
name) so batch outcomes and API responses can report failures uniformly.
"""

from typing import Optional


class IngestionError(Exception):
    """Base exception for ingestion failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__


# =============================================================================
# Extraction
# =============================================================================

class ExtractionError(IngestionError):
    """A document could not be turned into a FiscalDocument."""
    pass


class MalformedDocument(ExtractionError):
    """The file is not well-formed XML."""
    pass


class MissingInvoiceStructure(ExtractionError):
    """The XML has no infNFe / NFe element."""
    pass


class UnidentifiableDocument(ExtractionError):
    """Neither a document number nor an access key could be resolved."""
    pass


class MissingIssuerData(ExtractionError):
    """Issuer block, tax ID or legal name is missing."""
    pass


class InvalidAmount(ExtractionError):
    """Total amount is missing, not a number, or not positive."""
    pass


class UnsupportedDocument(ExtractionError):
    """File type or size is not accepted by any extractor."""
    pass


class ExtractionServiceError(IngestionError):
    """The external inference service reported a failure."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# Installments
# =============================================================================

class InstallmentSumMismatch(IngestionError):
    """Installment amounts do not add up to the document total."""

    def __init__(self, total_cents: int, installments_cents: int):
        super().__init__(
            f"Installments sum to {installments_cents} cents but document total is "
            f"{total_cents} cents (difference {total_cents - installments_cents})"
        )
        self.total_cents = total_cents
        self.installments_cents = installments_cents


# =============================================================================
# Persistence
# =============================================================================

class PersistenceError(IngestionError):
    """A ledger write failed."""
    pass


class VendorPersistenceError(PersistenceError):
    """Vendor lookup failed and a new vendor could not be created."""
    pass


class DocumentPersistenceError(PersistenceError):
    """The payable document header could not be written."""
    pass


class InstallmentPersistenceError(PersistenceError):
    """Installment rows could not be written after the header was committed."""

    def __init__(self, message: str, document_id: Optional[int] = None):
        super().__init__(message)
        self.document_id = document_id


class DuplicateReference(PersistenceError):
    """The ledger already holds a document with the same reference key."""

    def __init__(self, reference_key: str):
        super().__init__(f"Reference {reference_key} already exists in the ledger")
        self.reference_key = reference_key


# =============================================================================
# Review gate
# =============================================================================

class InvalidReviewTransition(IngestionError):
    """A review session was asked to move to a state it cannot reach."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move review session from {current} to {requested}")
        self.current = current
        self.requested = requested
