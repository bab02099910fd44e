"""Duplicate detection against the ledger.

Exposes:
- check_duplicate(store, document) -> DuplicateCheck

Checks run in order and the first hit wins:
1. reference key (access key, else document number) against stored reference keys
2. document number against stored document numbers of the same issuer
3. optional: "<label> <number>" contained in a stored description

Document numbers are sequences per issuer, so step 2 never matches another
vendor's document. Without a known issuer it only runs for documents that
carry no access key of their own.

The check is advisory. The ledger's UNIQUE reference_key closes the gap
between check and insert.
"""

from dataclasses import dataclass
from typing import Optional

from core.models import FiscalDocument, only_digits
from core.observability.logging import get_logger
from ledger.db import LedgerStore

logger = get_logger(__name__)


class MatchedOn:
    NONE = ""
    REFERENCE_KEY = "reference_key"
    DOCUMENT_NUMBER = "document_number"
    DESCRIPTION = "description"


@dataclass
class DuplicateCheck:
    """Result of a duplicate check."""
    is_duplicate: bool
    matched_on: str = MatchedOn.NONE
    existing_document_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "is_duplicate": self.is_duplicate,
            "matched_on": self.matched_on,
            "existing_document_id": self.existing_document_id,
        }


def check_duplicate(
    store: LedgerStore,
    document: FiscalDocument,
    label: str = "NFe",
    description_fallback: bool = False,
) -> DuplicateCheck:
    """Check whether ``document`` is already in the ledger."""
    return check_reference(
        store,
        reference_key=document.reference_key,
        document_number=document.document_number,
        label=label,
        description_fallback=description_fallback,
        issuer_tax_id=document.issuer_tax_id,
    )


def check_reference(
    store: LedgerStore,
    reference_key: Optional[str],
    document_number: Optional[str] = None,
    label: str = "NFe",
    description_fallback: bool = False,
    issuer_tax_id: Optional[str] = None,
) -> DuplicateCheck:
    """Duplicate check from bare identifiers (used by the review gate)."""
    if reference_key:
        existing = store.find_document_by_reference(reference_key)
        if existing is not None:
            logger.info("Duplicate by reference key %s", reference_key)
            return DuplicateCheck(True, MatchedOn.REFERENCE_KEY, existing.id)

    if document_number:
        issuer = only_digits(issuer_tax_id)
        existing = None
        if issuer:
            existing = store.find_document_by_number(document_number, issuer_tax_id=issuer)
        elif not reference_key or reference_key == document_number:
            existing = store.find_document_by_number(document_number)
        if existing is not None:
            logger.info("Duplicate by document number %s", document_number)
            return DuplicateCheck(True, MatchedOn.DOCUMENT_NUMBER, existing.id)

        if description_fallback:
            existing = store.find_document_by_description(f"{label} {document_number}")
            if existing is not None:
                logger.info("Duplicate by description '%s %s'", label, document_number)
                return DuplicateCheck(True, MatchedOn.DESCRIPTION, existing.id)

    return DuplicateCheck(False)
