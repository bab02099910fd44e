"""
Import Batch Workflow

Durable version of the batch importer:
for each file (in submitted order) -> import_fiscal_file -> pause -> next

Files are processed one at a time. The ``progress`` query reports the
percentage of files finished; the ``cancel`` signal stops the batch before
the next file starts.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ApplicationError

with workflow.unsafe.imports_passed_through():
    from activities.ingest import import_fiscal_file, ImportFileInput


TASK_QUEUE = "fiscal-import"

COMMITTED = "COMMITTED"
SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"
AWAITING_REVIEW = "AWAITING_REVIEW"
FAILED_STATES = {"EXTRACT_FAILED", "PERSIST_FAILED"}


@dataclass
class ImportBatchInput:
    """Input for the import batch workflow"""
    file_paths: List[str]
    batch_id: str = ""
    pause_seconds: float = 0.1
    ledger_db_path: Optional[str] = None
    content_types: Dict[str, str] = field(default_factory=dict)


@workflow.defn
class ImportBatchWorkflow:
    """
    Sequential batch import.

    Each file runs in its own activity; a failed file is recorded and the
    batch moves on.
    """

    def __init__(self):
        self.total = 0
        self.outcomes: List[Dict[str, Any]] = []
        self.cancelled = False

    @workflow.run
    async def run(self, input: ImportBatchInput) -> Dict[str, Any]:
        if not input.file_paths:
            raise ApplicationError("No files selected", non_retryable=True)

        self.total = len(input.file_paths)
        batch_id = input.batch_id or workflow.info().workflow_id
        workflow.logger.info(f"Starting import batch {batch_id} with {self.total} file(s)")

        activity_options = {
            "start_to_close_timeout": timedelta(minutes=5),
            "retry_policy": RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=1),
                backoff_coefficient=2.0,
                non_retryable_error_types=["FileNotFoundError"],
            ),
        }

        for index, file_path in enumerate(input.file_paths):
            if self.cancelled:
                workflow.logger.warning(f"Batch {batch_id} cancelled after {len(self.outcomes)} file(s)")
                break

            try:
                outcome = await workflow.execute_activity(
                    import_fiscal_file,
                    ImportFileInput(
                        file_path=file_path,
                        batch_id=batch_id,
                        content_type=input.content_types.get(file_path),
                        ledger_db_path=input.ledger_db_path,
                    ),
                    **activity_options,
                )
            except Exception as e:
                # The file failed outside the importer (missing file, retries exhausted)
                workflow.logger.error(f"Import of {file_path} failed: {e}")
                outcome = {
                    "filename": file_path.replace("\\", "/").rsplit("/", 1)[-1],
                    "state": "EXTRACT_FAILED",
                    "message": str(e),
                    "error_kind": type(e).__name__,
                }

            self.outcomes.append(outcome)
            workflow.logger.info(f"Progress {self._progress():.0f}%: {outcome.get('filename')} {outcome.get('state')}")

            if index < self.total - 1 and input.pause_seconds > 0:
                await asyncio.sleep(input.pause_seconds)

        return self._summary(batch_id)

    @workflow.query
    def progress(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": len(self.outcomes),
            "percent": self._progress(),
            "cancelled": self.cancelled,
        }

    @workflow.signal
    def cancel(self) -> None:
        self.cancelled = True

    def _progress(self) -> float:
        if not self.total:
            return 0.0
        return len(self.outcomes) / self.total * 100

    def _summary(self, batch_id: str) -> Dict[str, Any]:
        states = [o.get("state") for o in self.outcomes]
        return {
            "batch_id": batch_id,
            "total_files": self.total,
            "processed": len(self.outcomes),
            "committed": states.count(COMMITTED),
            "duplicates": states.count(SKIPPED_DUPLICATE),
            "failed": sum(1 for s in states if s in FAILED_STATES),
            "awaiting_review": states.count(AWAITING_REVIEW),
            "cancelled": self.cancelled and len(self.outcomes) < self.total,
            "messages": [f"{o.get('filename')}: {o.get('message', '')}" for o in self.outcomes],
            "outcomes": self.outcomes,
        }
