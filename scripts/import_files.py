"""Import fiscal documents into the local ledger without Temporal.

Runs the batch importer in-process; useful for a one-off folder of NF-e
XML files.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import Settings
from core.errors import ExtractionServiceError
from core.observability import configure_logging
from extraction.inference import build_inference_service
from ledger.db import LedgerStore
from pipeline.importer import BatchImporter, FileImporter, UploadedFile


def collect(paths):
    files = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.is_file()))
        else:
            files.append(path)
    return files


async def run(paths, db_path=None):
    settings = Settings.from_env()
    store = LedgerStore(Path(db_path) if db_path else settings.ledger_db_path)
    store.init_db()

    try:
        service = build_inference_service(settings)
    except ExtractionServiceError:
        service = None

    batch = BatchImporter(FileImporter(store, settings, inference_service=service))
    uploads = [UploadedFile.from_path(p) for p in collect(paths)]

    def on_progress(percent, outcome):
        print(f"[{percent:5.1f}%] {outcome.filename}: {outcome.state.value} {outcome.message}")

    return await batch.import_files(uploads, progress_callback=on_progress)


def main():
    parser = argparse.ArgumentParser(description="Import fiscal documents into the ledger")
    parser.add_argument("paths", nargs="+", help="Files or directories to import")
    parser.add_argument("--db", default=None, help="Ledger database path (default: LEDGER_DB_PATH)")
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    try:
        report = asyncio.run(run(args.paths, args.db))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\n{report.summary}")
    return 0 if not report.failed else 2


if __name__ == "__main__":
    sys.exit(main())
