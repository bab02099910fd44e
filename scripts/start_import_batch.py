"""Start an ImportBatchWorkflow on Temporal.

Connects to Temporal, submits the given files as one batch, polls the
progress query while the batch runs and prints the summary.
"""

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import Settings
from extraction.nfe_xml import is_nfe_candidate
from pipeline.importer import guess_content_type
from temporal_client import get_temporal_client
from workflows.import_batch_workflow import ImportBatchWorkflow, ImportBatchInput


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def start_import_batch(paths, pause_seconds: float = None, poll_seconds: float = 2.0) -> dict:
    """Start an import batch and wait for its result.

    Args:
        paths: Files to import, in order
        pause_seconds: Pause between files (defaults to IMPORT_PAUSE_SECONDS)
        poll_seconds: How often to print progress

    Returns:
        dict: Batch summary returned by the workflow
    """
    files = [Path(p).resolve() for p in paths]
    missing = [str(f) for f in files if not f.exists()]
    if missing:
        raise FileNotFoundError(f"Files not found: {', '.join(missing)}")

    settings = Settings.from_env()
    batch_id = f"batch-{uuid.uuid4().hex[:8]}"
    content_types = {
        str(f): ("application/xml" if is_nfe_candidate(f.name, None) else guess_content_type(f.name))
        for f in files
    }

    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal: {client.namespace}")

    handle = await client.start_workflow(
        ImportBatchWorkflow.run,
        ImportBatchInput(
            file_paths=[str(f) for f in files],
            batch_id=batch_id,
            pause_seconds=settings.import_pause_seconds if pause_seconds is None else pause_seconds,
            ledger_db_path=str(settings.ledger_db_path),
            content_types=content_types,
        ),
        task_queue=settings.temporal_task_queue,
        id=batch_id,
    )
    logger.info(f"Workflow started: {handle.id}")

    result_task = asyncio.ensure_future(handle.result())
    while not result_task.done():
        await asyncio.sleep(poll_seconds)
        if result_task.done():
            break
        progress = await handle.query(ImportBatchWorkflow.progress)
        logger.info(f"Progress: {progress['percent']:.0f}% ({progress['processed']}/{progress['total']})")

    return result_task.result()


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Start a fiscal document import batch")
    parser.add_argument("files", nargs="+", help="Files to import (NF-e XML, PDF or images)")
    parser.add_argument(
        "--pause",
        type=float,
        default=None,
        help="Seconds to wait between files (default: IMPORT_PAUSE_SECONDS)"
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(start_import_batch(args.files, pause_seconds=args.pause))
        print("\n=== BATCH RESULT ===")
        for key in ("batch_id", "total_files", "committed", "duplicates", "failed", "awaiting_review", "cancelled"):
            print(f"  {key}: {result.get(key)}")
        for message in result.get("messages", []):
            print(f"  - {message}")
        pending = [o for o in result.get("outcomes", []) if o.get("state") == "AWAITING_REVIEW"]
        if pending:
            print("  Awaiting review: POST each outcome below to /documents/review")
            for outcome in pending:
                print(f"  * {outcome.get('filename')}")
        print("====================\n")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
