"""Worker for the fiscal document import pipeline.

Listens on the import task queue and executes the batch workflow and the
per-file import activity.

Run with --queue <name> to poll a queue other than the configured one.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import Settings
from core.observability import configure_logging
from temporal_client import get_temporal_client
from workflows.import_batch_workflow import ImportBatchWorkflow
from activities.ingest import import_fiscal_file


logger = logging.getLogger(__name__)

WORKFLOWS = [ImportBatchWorkflow]
ACTIVITIES = [import_fiscal_file]


async def run_worker(queue: str = None):
    """Start worker listening on the import task queue.

    Args:
        queue: Task queue to poll (defaults to TEMPORAL_TASK_QUEUE)

    Raises:
        Exception: If connection to Temporal fails
    """
    settings = Settings.from_env()
    task_queue = queue or settings.temporal_task_queue

    try:
        client = await get_temporal_client(settings)
        logger.info(f"Connected to Temporal: {client.namespace}")

        worker = Worker(
            client,
            task_queue=task_queue,
            workflows=WORKFLOWS,
            activities=ACTIVITIES,
        )
        logger.info(f"Worker created for queue '{task_queue}':")
        logger.info(f"  - Workflows: {len(WORKFLOWS)}")
        logger.info(f"  - Activities: {len(ACTIVITIES)}")

        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()

    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Fiscal Import Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=None,
        help="Task queue to poll (default: TEMPORAL_TASK_QUEUE or fiscal-import)"
    )

    args = parser.parse_args()
    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    asyncio.run(run_worker(queue=args.queue))


if __name__ == "__main__":
    main()
