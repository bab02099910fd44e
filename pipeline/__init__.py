"""Import orchestration: batch imports and the human review gate."""

from pipeline.importer import (
    BatchImporter,
    BatchReport,
    FileImporter,
    FileOutcome,
    FileState,
    UploadedFile,
    persist_document,
)
from pipeline.review import ReviewEdits, ReviewRegistry, ReviewSession, ReviewState

__all__ = [
    "BatchImporter",
    "BatchReport",
    "FileImporter",
    "FileOutcome",
    "FileState",
    "UploadedFile",
    "persist_document",
    "ReviewEdits",
    "ReviewRegistry",
    "ReviewSession",
    "ReviewState",
]
