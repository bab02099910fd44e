"""Import activities for the fiscal document pipeline.

Temporal activity that runs the per-file import state machine for one file
on disk. Per-file failures are returned in the outcome, not raised, so the
workflow only retries on infrastructure errors.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from core.config import Settings
from core.errors import ExtractionServiceError
from core.observability.logging import with_correlation
from extraction.inference import build_inference_service
from extraction.nfe_xml import is_nfe_candidate
from ledger.db import LedgerStore
from pipeline.importer import FileImporter, UploadedFile


@dataclass
class ImportFileInput:
    """Input for import_fiscal_file activity.

    Attributes:
        file_path: Absolute path to the uploaded file
        batch_id: Batch the file belongs to (for log correlation)
        content_type: MIME type reported at upload, if any
        ledger_db_path: Override for the ledger database path
    """
    file_path: str
    batch_id: str = ""
    content_type: Optional[str] = None
    ledger_db_path: Optional[str] = None


@activity.defn
async def import_fiscal_file(input: ImportFileInput) -> dict:
    """Import one file into the ledger.

    Args:
        input: ImportFileInput with the file path

    Returns:
        FileOutcome as a dict (state, message, ids, history)

    Raises:
        ApplicationError: Non-retryable, if the file does not exist
    """
    path = Path(input.file_path)
    if not path.exists():
        raise ApplicationError(f"File not found: {path}", type="FileNotFoundError", non_retryable=True)

    settings = Settings.from_env()
    store = LedgerStore(Path(input.ledger_db_path) if input.ledger_db_path else settings.ledger_db_path)
    store.init_db()

    service = None
    if not is_nfe_candidate(path.name, input.content_type):
        try:
            service = build_inference_service(settings)
        except ExtractionServiceError as e:
            activity.logger.warning(f"No inference service for {path.name}: {e.message}")

    info = activity.info()
    with with_correlation(
        batch_id=input.batch_id or None,
        workflow_id=info.workflow_id,
        workflow_run_id=info.workflow_run_id,
        activity_id=info.activity_id,
        activity_name=info.activity_type,
    ):
        activity.logger.info(f"Importing {path.name}")
        importer = FileImporter(store, settings, inference_service=service)
        outcome = await importer.import_file(UploadedFile.from_path(path, input.content_type))

    activity.logger.info(f"{path.name}: {outcome.state.value} - {outcome.message}")
    return outcome.to_dict()
