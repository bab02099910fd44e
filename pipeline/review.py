"""Human review gate for AI extracted documents.

A ReviewSession holds one uploaded image/PDF from extraction to commit:

    UPLOADED -> EXTRACTING -> EXTRACT_FAILED
                           -> AWAITING_REVIEW -> (edits) -> COMMITTING -> COMMITTED
                                                                       -> FAILED -> (edits) -> ...

Nothing is written to the ledger before an operator commits. New
obligations go through the same duplicate check, vendor resolution,
installment synthesis and persistence as batch imports; settlements mark
the approved installment paid.
"""

import sqlite3
import uuid
from datetime import date, datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Dict, List, Optional

from pydantic import Field

from core.config import Settings
from core.errors import (
    DuplicateReference,
    ExtractionServiceError,
    IngestionError,
    InvalidAmount,
    InvalidReviewTransition,
    PersistenceError,
    UnsupportedDocument,
)
from core.models import CanonicalBase, DateValue, Installment, PayableDocument, RawInstallment, SettlementPayment, from_cents
from core.observability.logging import get_logger, with_correlation
from extraction.document_ai import (
    DocumentExtraction,
    DocumentIntent,
    ExtractedInstallment,
    extract_document,
    suggest_matches,
)
from extraction.inference import DocumentInferenceService
from installments.synthesizer import ScheduleInterval, split_evenly, synthesize, validate_schedule
from ledger.db import LedgerStore
from pipeline.importer import persist_document
from reconciliation.duplicates import check_reference
from reconciliation.settlement import SettlementCandidates, find_candidates, settle
from vendor_resolver.models import MatchSuggestion
from vendor_resolver.resolver import VendorResolver

logger = get_logger(__name__)

DEFAULT_SESSION_MAX_AGE = timedelta(hours=24)


class ReviewState(str, Enum):
    UPLOADED = "UPLOADED"
    EXTRACTING = "EXTRACTING"
    EXTRACT_FAILED = "EXTRACT_FAILED"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS = {
    ReviewState.UPLOADED: {ReviewState.EXTRACTING},
    ReviewState.EXTRACTING: {ReviewState.AWAITING_REVIEW, ReviewState.EXTRACT_FAILED},
    ReviewState.AWAITING_REVIEW: {ReviewState.AWAITING_REVIEW, ReviewState.COMMITTING},
    ReviewState.COMMITTING: {ReviewState.COMMITTED, ReviewState.FAILED},
    ReviewState.FAILED: {ReviewState.AWAITING_REVIEW},
    ReviewState.EXTRACT_FAILED: set(),
    ReviewState.COMMITTED: set(),
}


class ReviewEdits(CanonicalBase):
    """Operator changes applied before commit. Unset fields are left alone."""
    intent: Optional[DocumentIntent] = None
    description: Optional[str] = None
    document_number: Optional[str] = None
    access_key: Optional[str] = None
    total_cents: Optional[int] = Field(default=None, gt=0)
    issue_date: Optional[DateValue] = None
    reference: Optional[str] = None
    vendor_id: Optional[int] = None
    vendor_tax_id: Optional[str] = None
    vendor_legal_name: Optional[str] = None
    category_id: Optional[int] = None
    branch_id: Optional[int] = None
    installments: Optional[List[ExtractedInstallment]] = None
    installment_count: Optional[int] = Field(default=None, ge=1)
    interval: Optional[ScheduleInterval] = None
    interval_days: Optional[int] = Field(default=None, ge=1)
    first_due_date: Optional[DateValue] = None
    payment: Optional[SettlementPayment] = None
    selected_installment_id: Optional[int] = None


class ReviewSession:
    """One document moving through extraction, review and commit."""

    def __init__(
        self,
        store: LedgerStore,
        filename: str,
        mime_type: str,
        settings: Optional[Settings] = None,
    ):
        self.id = uuid.uuid4().hex
        self.store = store
        self.settings = settings or Settings()
        self.filename = filename
        self.mime_type = mime_type
        self.state = ReviewState.UPLOADED
        self.history: List[ReviewState] = [ReviewState.UPLOADED]
        self.created_at = datetime.utcnow()

        self.extraction: Optional[DocumentExtraction] = None
        self.suggestion = MatchSuggestion()
        self.candidates: Optional[SettlementCandidates] = None

        self.vendor_id: Optional[int] = None
        self.vendor_tax_id: Optional[str] = None
        self.vendor_legal_name: Optional[str] = None
        self.category_id: Optional[int] = self.settings.default_category_id
        self.branch_id: Optional[int] = self.settings.default_branch_id
        self.installment_count: Optional[int] = None
        self.interval = ScheduleInterval.MONTHLY
        self.interval_days = 30
        self.first_due_date: Optional[date] = None
        self.selected_installment_id: Optional[int] = None

        self.error: Optional[str] = None
        self.error_kind: Optional[str] = None
        self.result: Optional[dict] = None

    def _move(self, state: ReviewState) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidReviewTransition(self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _fail(self, state: ReviewState, error: IngestionError) -> None:
        self._move(state)
        self.error = error.message
        self.error_kind = error.kind
        logger.warning("Review %s failed: %s", self.id, error.message, extra_fields={"kind": error.kind})

    # =========================================================================
    # Extraction
    # =========================================================================

    async def extract(self, content: bytes, service: DocumentInferenceService) -> "ReviewSession":
        """Run inference and pre-fill suggestions or settlement candidates."""
        self._move(ReviewState.EXTRACTING)
        with with_correlation(session_id=self.id, file_name=self.filename):
            try:
                extraction = await extract_document(
                    content,
                    self.mime_type,
                    service,
                    filename=self.filename,
                    max_bytes=self.settings.max_upload_bytes,
                )
            except (UnsupportedDocument, ExtractionServiceError) as e:
                self._fail(ReviewState.EXTRACT_FAILED, e)
                return self
            self._accept(extraction)
        return self

    @classmethod
    def from_extraction(
        cls,
        store: LedgerStore,
        filename: str,
        mime_type: str,
        extraction: DocumentExtraction,
        settings: Optional[Settings] = None,
    ) -> "ReviewSession":
        """Open a session for a document already extracted by a batch import."""
        session = cls(store, filename, mime_type, settings)
        session._move(ReviewState.EXTRACTING)
        with with_correlation(session_id=session.id, file_name=filename):
            session._accept(extraction)
        return session

    def _accept(self, extraction: DocumentExtraction) -> None:
        self.extraction = extraction
        if extraction.intent == DocumentIntent.SETTLEMENT:
            self._refresh_candidates()
        else:
            self.suggestion = suggest_matches(
                extraction,
                self.store.list_vendors(),
                self.store.list_categories(),
            )
            self.vendor_id = self.suggestion.vendor_id
            if self.suggestion.category_id is not None:
                self.category_id = self.suggestion.category_id
            self.vendor_tax_id = extraction.document.issuer_tax_id
            self.vendor_legal_name = extraction.document.suggested_vendor_name

        self._move(ReviewState.AWAITING_REVIEW)

    def _refresh_candidates(self) -> None:
        payment = self.extraction.payment if self.extraction else None
        if payment is None:
            self.candidates = None
            return
        self.candidates = find_candidates(self.store, payment)
        auto = self.candidates.auto_selected
        if auto is not None and self.selected_installment_id is None:
            self.selected_installment_id = auto.id

    # =========================================================================
    # Review
    # =========================================================================

    def apply_edits(self, edits: ReviewEdits) -> "ReviewSession":
        """Apply operator edits; allowed while awaiting review or after a failed commit."""
        self._move(ReviewState.AWAITING_REVIEW)
        self.error = None
        self.error_kind = None

        extraction = self.extraction
        document_updates = {
            name: getattr(edits, name)
            for name in ("description", "document_number", "access_key", "total_cents", "issue_date", "reference")
            if getattr(edits, name) is not None
        }
        if document_updates:
            extraction.document = extraction.document.model_copy(update=document_updates)

        if edits.installments is not None:
            extraction.installments = [
                i.model_copy(update={"sequence_number": n})
                for n, i in enumerate(edits.installments, start=1)
            ]

        for name in (
            "vendor_id", "vendor_tax_id", "vendor_legal_name", "category_id", "branch_id",
            "installment_count", "interval", "interval_days", "first_due_date", "selected_installment_id",
        ):
            value = getattr(edits, name)
            if value is not None:
                setattr(self, name, value)

        refresh = False
        if edits.intent is not None and edits.intent != extraction.intent:
            extraction.intent = edits.intent
            refresh = True
        if edits.payment is not None:
            extraction.payment = edits.payment
            refresh = True
        if refresh and extraction.intent == DocumentIntent.SETTLEMENT:
            self._refresh_candidates()
        return self

    # =========================================================================
    # Commit
    # =========================================================================

    def commit(self) -> "ReviewSession":
        """Write the reviewed document (or settlement) to the ledger.

        Raises:
            InvalidReviewTransition: If the session is not awaiting review
            ValueError: If a settlement has no approved installment
        """
        if self.state != ReviewState.AWAITING_REVIEW:
            raise InvalidReviewTransition(self.state.value, ReviewState.COMMITTING.value)

        if self.extraction.intent == DocumentIntent.SETTLEMENT:
            if self.extraction.payment is None:
                raise ValueError("Settlement has no payment data")
            if self.selected_installment_id is None:
                raise ValueError("No installment selected for settlement")

        self._move(ReviewState.COMMITTING)
        with with_correlation(session_id=self.id, file_name=self.filename):
            try:
                if self.extraction.intent == DocumentIntent.SETTLEMENT:
                    self.result = self._commit_settlement()
                else:
                    self.result = self._commit_obligation()
            except IngestionError as e:
                self._fail(ReviewState.FAILED, e)
                return self
            except sqlite3.Error as e:
                self._fail(ReviewState.FAILED, PersistenceError(f"Ledger error: {e}"))
                return self
            except ValueError as e:
                # Schedule rules (count, numbering, positive amounts)
                self._fail(ReviewState.FAILED, InvalidAmount(str(e)))
                return self

            self._move(ReviewState.COMMITTED)
            logger.info("Review %s committed", self.id, extra_fields=self.result)
        return self

    def _commit_settlement(self) -> dict:
        record = settle(self.store, self.selected_installment_id, self.extraction.payment)
        return {"installment_id": record.id, "document_id": record.document_id, "paid_cents": record.paid_cents}

    def _commit_obligation(self) -> dict:
        document = self.extraction.document
        label = self.settings.document_label

        if not document.total_cents or document.total_cents <= 0:
            raise InvalidAmount("Total amount is required before commit")

        reference_key = document.reference_key or f"DOC-{self.id[:12]}"
        duplicate = check_reference(
            self.store,
            reference_key=document.reference_key or None,
            document_number=document.document_number,
            label=label,
            description_fallback=self.settings.duplicate_description_fallback,
            issuer_tax_id=self._issuer_tax_id(),
        )
        if duplicate.is_duplicate:
            raise DuplicateReference(document.reference_key or document.document_number)

        vendor_id = self.vendor_id
        if vendor_id is None and self.vendor_tax_id and self.vendor_legal_name:
            vendor_id = VendorResolver(self.store).resolve(self.vendor_tax_id, self.vendor_legal_name).vendor_id

        installments = self.build_schedule()

        number = document.document_number
        description = document.description or (f"{label} {number}" if number else self.filename)
        header = PayableDocument(
            reference_key=reference_key,
            document_number=number,
            access_key=document.access_key,
            total_cents=document.total_cents,
            vendor_id=vendor_id,
            installment_count=len(installments),
            description=description,
            reference=document.reference or (f"{label} {number}" if number else None),
            issue_date=document.issue_date or date.today(),
            category_id=self.category_id,
            branch_id=self.branch_id,
        )
        document_id, installment_ids = persist_document(self.store, header, installments)
        return {
            "document_id": document_id,
            "installment_ids": installment_ids,
            "vendor_id": vendor_id,
            "reference_key": reference_key,
        }

    def _issuer_tax_id(self) -> Optional[str]:
        if self.vendor_id is not None:
            vendor = self.store.get_vendor(self.vendor_id)
            if vendor is not None:
                return vendor.tax_id
        return self.vendor_tax_id

    def build_schedule(self) -> List[Installment]:
        """Installments for commit: the reviewed ones if any, else an even split."""
        document = self.extraction.document
        issue_date = document.issue_date or date.today()

        if self.extraction.installments:
            raws = [
                RawInstallment(sequence=i.sequence_number, amount=from_cents(i.amount_cents), due_date=i.due_date)
                for i in self.extraction.installments
            ]
            installments = synthesize(document.total_cents, raws, issue_date)
        else:
            installments = split_evenly(
                document.total_cents,
                self.installment_count or 1,
                self.first_due_date or issue_date,
                interval=self.interval,
                interval_days=self.interval_days,
            )
        validate_schedule(installments, document.total_cents)
        return installments

    # =========================================================================
    # Serialization
    # =========================================================================

    def snapshot(self) -> dict:
        return {
            "session_id": self.id,
            "filename": self.filename,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "extraction": self.extraction.model_dump(mode="json") if self.extraction else None,
            "suggestion": self.suggestion.model_dump(mode="json"),
            "candidates": self.candidates.to_dict() if self.candidates else None,
            "vendor_id": self.vendor_id,
            "category_id": self.category_id,
            "branch_id": self.branch_id,
            "selected_installment_id": self.selected_installment_id,
            "error": self.error,
            "error_kind": self.error_kind,
            "result": self.result,
        }


class ReviewRegistry:
    """In-process registry of open review sessions.

    Sessions older than ``max_age`` are dropped whenever a new one is added.
    """

    def __init__(self, max_age: timedelta = DEFAULT_SESSION_MAX_AGE):
        self._sessions: Dict[str, ReviewSession] = {}
        self._lock = Lock()
        self.max_age = max_age

    def add(self, session: ReviewSession) -> ReviewSession:
        self.prune()
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[ReviewSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop expired sessions; a session mid-commit is kept. Returns how many were dropped."""
        cutoff = (now or datetime.utcnow()) - self.max_age
        with self._lock:
            expired = [
                session_id for session_id, session in self._sessions.items()
                if session.created_at < cutoff and session.state != ReviewState.COMMITTING
            ]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info("Dropped %d expired review session(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
