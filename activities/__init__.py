"""Activity definitions module."""

from activities.ingest import import_fiscal_file, ImportFileInput

__all__ = [
    "import_fiscal_file",
    "ImportFileInput",
]
