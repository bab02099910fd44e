"""Batch import of fiscal documents into the ledger.

Exposes:
- FileImporter.import_file(upload) -> FileOutcome
- BatchImporter.import_files(uploads) -> BatchReport
- persist_document(store, header, installments) -> (document_id, installment_ids)

Per-file state machine:

    PENDING -> EXTRACTING -> EXTRACT_FAILED
                          -> EXTRACTED -> DUPLICATE_CHECK -> SKIPPED_DUPLICATE
                                                          -> PROCEED -> VENDOR_RESOLUTION
                             -> INSTALLMENT_SYNTHESIS -> PERSISTING -> COMMITTED
                                                                    -> PERSIST_FAILED

Images and PDFs stop at AWAITING_REVIEW after extraction; they are
committed through a review session, never automatically.
"""

import asyncio
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from core.config import Settings
from core.errors import (
    DocumentPersistenceError,
    DuplicateReference,
    ExtractionError,
    ExtractionServiceError,
    IngestionError,
    InstallmentPersistenceError,
    InstallmentSumMismatch,
    UnsupportedDocument,
    VendorPersistenceError,
)
from core.models import FiscalDocument, Installment, PayableDocument
from core.observability.logging import get_logger, log_file_outcome, with_correlation
from core.observability.metrics import get_metrics
from extraction.document_ai import DocumentExtraction, extract_document
from extraction.inference import DocumentInferenceService
from extraction.nfe_xml import extract_nfe, is_nfe_candidate
from installments.synthesizer import synthesize
from ledger.db import LedgerStore
from reconciliation.duplicates import check_duplicate
from vendor_resolver.resolver import VendorResolver

logger = get_logger(__name__)


class FileState(str, Enum):
    PENDING = "PENDING"
    EXTRACTING = "EXTRACTING"
    EXTRACT_FAILED = "EXTRACT_FAILED"
    EXTRACTED = "EXTRACTED"
    DUPLICATE_CHECK = "DUPLICATE_CHECK"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"
    PROCEED = "PROCEED"
    VENDOR_RESOLUTION = "VENDOR_RESOLUTION"
    INSTALLMENT_SYNTHESIS = "INSTALLMENT_SYNTHESIS"
    PERSISTING = "PERSISTING"
    COMMITTED = "COMMITTED"
    PERSIST_FAILED = "PERSIST_FAILED"
    AWAITING_REVIEW = "AWAITING_REVIEW"


TERMINAL_STATES = {
    FileState.EXTRACT_FAILED,
    FileState.SKIPPED_DUPLICATE,
    FileState.COMMITTED,
    FileState.PERSIST_FAILED,
    FileState.AWAITING_REVIEW,
}

FAILED_STATES = {FileState.EXTRACT_FAILED, FileState.PERSIST_FAILED}


@dataclass
class UploadedFile:
    """One file submitted for import."""
    filename: str
    content: bytes
    content_type: Optional[str] = None

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "UploadedFile":
        path = Path(path)
        return cls(filename=path.name, content=path.read_bytes(), content_type=content_type)


@dataclass
class FileOutcome:
    """Result of importing one file, with every state it went through."""
    filename: str
    state: FileState = FileState.PENDING
    message: str = ""
    error_kind: Optional[str] = None
    reference_key: Optional[str] = None
    document_id: Optional[int] = None
    vendor_id: Optional[int] = None
    vendor_created: bool = False
    installment_ids: List[int] = field(default_factory=list)
    duplicate_of: Optional[int] = None
    history: List[FileState] = field(default_factory=lambda: [FileState.PENDING])
    extraction: Optional[DocumentExtraction] = None
    content_type: Optional[str] = None
    review_session_id: Optional[str] = None

    def transition(self, state: FileState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"{self.filename} already finished in {self.state.value}")
        self.state = state
        self.history.append(state)
        logger.debug("%s -> %s", self.filename, state.value)

    def fail(self, state: FileState, error: IngestionError) -> "FileOutcome":
        self.transition(state)
        self.message = error.message
        self.error_kind = error.kind
        if isinstance(error, InstallmentPersistenceError):
            self.document_id = error.document_id
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def failed(self) -> bool:
        return self.state in FAILED_STATES

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "state": self.state.value,
            "message": self.message,
            "error_kind": self.error_kind,
            "reference_key": self.reference_key,
            "document_id": self.document_id,
            "vendor_id": self.vendor_id,
            "vendor_created": self.vendor_created,
            "installment_ids": list(self.installment_ids),
            "duplicate_of": self.duplicate_of,
            "history": [s.value for s in self.history],
            "extraction": self.extraction.model_dump(mode="json") if self.extraction else None,
            "content_type": self.content_type,
            "review_session_id": self.review_session_id,
        }


# =============================================================================
# Persistence
# =============================================================================

def persist_document(
    store: LedgerStore,
    header: PayableDocument,
    installments: List[Installment],
) -> Tuple[int, List[int]]:
    """Write one header row then its installment rows.

    The header is not rolled back when the installments fail; the error
    carries its id so the orphan can be found.

    Raises:
        DuplicateReference: Reference key already in the ledger
        DocumentPersistenceError: Header write failed
        InstallmentPersistenceError: Installment write failed after the header
    """
    try:
        document_id = store.insert_payable_document(header)
    except DuplicateReference:
        raise
    except sqlite3.Error as e:
        raise DocumentPersistenceError(f"Could not save document {header.reference_key}: {e}") from e

    try:
        installment_ids = store.insert_installments(document_id, installments)
    except sqlite3.Error as e:
        logger.error(
            "Installments failed after document %s was saved",
            document_id,
            extra_fields={"reference_key": header.reference_key, "error": str(e)},
        )
        raise InstallmentPersistenceError(
            f"Document {header.reference_key} saved (id {document_id}) but its installments failed: {e}",
            document_id=document_id,
        ) from e

    return document_id, installment_ids


# =============================================================================
# Per-File Import
# =============================================================================

class FileImporter:
    """Runs the per-file state machine against one ledger.

    Usage:
        importer = FileImporter(store, settings)
        outcome = await importer.import_file(UploadedFile("nfe.xml", data))
    """

    def __init__(
        self,
        store: LedgerStore,
        settings: Optional[Settings] = None,
        inference_service: Optional[DocumentInferenceService] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.inference_service = inference_service
        self.resolver = VendorResolver(store)

    async def import_file(self, upload: UploadedFile) -> FileOutcome:
        """Import one file; never raises for per-file failures."""
        outcome = FileOutcome(filename=upload.filename)
        started = time.perf_counter()

        with with_correlation(file_name=upload.filename):
            try:
                if is_nfe_candidate(upload.filename, upload.content_type):
                    self._import_xml(upload, outcome)
                else:
                    await self._extract_for_review(upload, outcome)
            except Exception as e:
                # Unexpected errors still end the file, never the batch
                logger.exception("Unexpected error importing %s", upload.filename)
                state = FileState.EXTRACT_FAILED
                if outcome.state not in (FileState.PENDING, FileState.EXTRACTING):
                    state = FileState.PERSIST_FAILED
                outcome.state = state
                outcome.history.append(state)
                outcome.message = f"Unexpected error: {e}"
                outcome.error_kind = type(e).__name__

            log_file_outcome(outcome.state.value, outcome.message, document_id=outcome.document_id)

        metrics = get_metrics()
        metrics.record_file_outcome(outcome.state.value, outcome.error_kind)
        metrics.record_processing_time("file", (time.perf_counter() - started) * 1000)
        return outcome

    def _import_xml(self, upload: UploadedFile, outcome: FileOutcome) -> None:
        label = self.settings.document_label

        outcome.transition(FileState.EXTRACTING)
        try:
            document = extract_nfe(upload.content, upload.filename)
        except ExtractionError as e:
            outcome.fail(FileState.EXTRACT_FAILED, e)
            return
        outcome.transition(FileState.EXTRACTED)
        outcome.reference_key = document.reference_key

        with with_correlation(reference_key=document.reference_key):
            outcome.transition(FileState.DUPLICATE_CHECK)
            duplicate = check_duplicate(
                self.store,
                document,
                label=label,
                description_fallback=self.settings.duplicate_description_fallback,
            )
            if duplicate.is_duplicate:
                outcome.transition(FileState.SKIPPED_DUPLICATE)
                outcome.duplicate_of = duplicate.existing_document_id
                outcome.message = (
                    f"{label} {document.document_number or document.reference_key} "
                    f"already imported (matched on {duplicate.matched_on})"
                )
                return
            outcome.transition(FileState.PROCEED)

            outcome.transition(FileState.VENDOR_RESOLUTION)
            try:
                resolution = self.resolver.resolve(
                    document.issuer_tax_id,
                    document.issuer_legal_name,
                    document.issuer_trade_name,
                )
            except VendorPersistenceError as e:
                outcome.fail(FileState.PERSIST_FAILED, e)
                return
            outcome.vendor_id = resolution.vendor_id
            outcome.vendor_created = resolution.created

            outcome.transition(FileState.INSTALLMENT_SYNTHESIS)
            try:
                installments = synthesize(document.total_cents, document.installments_raw, document.issue_date)
            except InstallmentSumMismatch as e:
                outcome.fail(FileState.PERSIST_FAILED, e)
                return

            outcome.transition(FileState.PERSISTING)
            header = self.build_header(document, resolution.vendor_id, len(installments))
            try:
                document_id, installment_ids = persist_document(self.store, header, installments)
            except DuplicateReference:
                # Lost the race against a concurrent import of the same document
                outcome.transition(FileState.SKIPPED_DUPLICATE)
                outcome.message = f"{label} {document.document_number} already imported (matched on reference_key)"
                return
            except (DocumentPersistenceError, InstallmentPersistenceError) as e:
                outcome.fail(FileState.PERSIST_FAILED, e)
                return

            outcome.transition(FileState.COMMITTED)
            outcome.document_id = document_id
            outcome.installment_ids = installment_ids
            outcome.message = (
                f"{label} {document.document_number} imported with "
                f"{len(installments)} installment(s)"
            )

    def build_header(self, document: FiscalDocument, vendor_id: Optional[int], installment_count: int) -> PayableDocument:
        label = self.settings.document_label
        number = document.document_number or document.reference_key
        return PayableDocument(
            reference_key=document.reference_key,
            document_number=document.document_number,
            access_key=document.access_key,
            total_cents=document.total_cents,
            vendor_id=vendor_id,
            installment_count=installment_count,
            description=f"{label} {number} - {document.issuer_legal_name}",
            reference=f"{label} {number}",
            issue_date=document.issue_date,
            category_id=self.settings.default_category_id,
            branch_id=self.settings.default_branch_id,
        )

    async def _extract_for_review(self, upload: UploadedFile, outcome: FileOutcome) -> None:
        outcome.transition(FileState.EXTRACTING)
        if self.inference_service is None:
            error = ExtractionServiceError(f"No inference service configured for {upload.filename}")
            outcome.fail(FileState.EXTRACT_FAILED, error)
            return
        content_type = upload.content_type or guess_content_type(upload.filename)
        if content_type == "application/octet-stream":
            content_type = guess_content_type(upload.filename)
        outcome.content_type = content_type
        try:
            extraction = await extract_document(
                upload.content,
                content_type,
                self.inference_service,
                filename=upload.filename,
                max_bytes=self.settings.max_upload_bytes,
            )
        except (UnsupportedDocument, ExtractionServiceError) as e:
            outcome.fail(FileState.EXTRACT_FAILED, e)
            return

        outcome.transition(FileState.AWAITING_REVIEW)
        outcome.extraction = extraction
        outcome.reference_key = extraction.document.reference_key or None
        outcome.message = f"{upload.filename} extracted ({extraction.confidence}% confidence), awaiting review"


def guess_content_type(filename: str) -> str:
    name = (filename or "").lower()
    if name.endswith(".pdf"):
        return "application/pdf"
    if name.endswith(".png"):
        return "image/png"
    if name.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if name.endswith(".webp"):
        return "image/webp"
    return "application/octet-stream"


# =============================================================================
# Batch Import
# =============================================================================

ProgressCallback = Callable[[float, FileOutcome], None]


@dataclass
class BatchReport:
    """Aggregate result of one batch, outcomes in submitted order."""
    batch_id: str
    outcomes: List[FileOutcome] = field(default_factory=list)
    total_files: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def committed(self) -> int:
        return sum(1 for o in self.outcomes if o.state == FileState.COMMITTED)

    @property
    def duplicates(self) -> int:
        return sum(1 for o in self.outcomes if o.state == FileState.SKIPPED_DUPLICATE)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def awaiting_review(self) -> int:
        return sum(1 for o in self.outcomes if o.state == FileState.AWAITING_REVIEW)

    @property
    def messages(self) -> List[str]:
        return [f"{o.filename}: {o.message}" for o in self.outcomes]

    @property
    def summary(self) -> str:
        parts = [f"{self.committed} imported", f"{self.duplicates} duplicate(s) skipped", f"{self.failed} failed"]
        if self.awaiting_review:
            parts.append(f"{self.awaiting_review} awaiting review")
        if self.cancelled:
            parts.append(f"cancelled after {len(self.outcomes)} of {self.total_files}")
        return ", ".join(parts)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "total_files": self.total_files,
            "processed": len(self.outcomes),
            "committed": self.committed,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "awaiting_review": self.awaiting_review,
            "cancelled": self.cancelled,
            "summary": self.summary,
            "messages": self.messages,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class BatchImporter:
    """Imports files one at a time with a fixed pause between them.

    A failing file never stops the batch. ``cancel()`` stops before the next
    file starts; the file in progress always finishes.
    """

    def __init__(self, importer: FileImporter, pause_seconds: Optional[float] = None):
        self.importer = importer
        if pause_seconds is None:
            pause_seconds = importer.settings.import_pause_seconds
        self.pause_seconds = pause_seconds
        self._cancelled = False
        self.progress = 0.0

    def cancel(self) -> None:
        self._cancelled = True

    async def import_files(
        self,
        uploads: List[UploadedFile],
        progress_callback: Optional[ProgressCallback] = None,
        batch_id: Optional[str] = None,
    ) -> BatchReport:
        """Import ``uploads`` in order.

        Raises:
            ValueError: If no files were given
        """
        if not uploads:
            raise ValueError("No files selected")

        report = BatchReport(batch_id=batch_id or uuid.uuid4().hex[:12], total_files=len(uploads))
        metrics = get_metrics()
        metrics.record_batch_started()
        self._cancelled = False
        self.progress = 0.0

        with with_correlation(batch_id=report.batch_id):
            logger.info("Starting batch of %d file(s)", len(uploads))

            for index, upload in enumerate(uploads):
                if self._cancelled:
                    report.cancelled = True
                    logger.warning("Batch cancelled before %s", upload.filename)
                    break

                outcome = await self.importer.import_file(upload)
                report.outcomes.append(outcome)

                self.progress = (index + 1) / len(uploads) * 100
                if progress_callback is not None:
                    progress_callback(self.progress, outcome)

                if index < len(uploads) - 1 and self.pause_seconds > 0:
                    await asyncio.sleep(self.pause_seconds)

            report.finished_at = datetime.utcnow()
            metrics.record_batch_completed(cancelled=report.cancelled)
            logger.info(report.summary, extra_fields={"committed": report.committed, "failed": report.failed})

        return report
