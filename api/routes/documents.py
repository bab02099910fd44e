"""Review endpoints for AI extracted documents.

Flow: POST /documents/extract -> PATCH /documents/{id} (any number of
times) -> POST /documents/{id}/commit.

Documents extracted by a durable batch import enter the same flow through
POST /documents/review; the batch outcome (filename, content_type,
extraction) can be posted as is.
"""

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import Field

from core.errors import InvalidReviewTransition
from core.models import CanonicalBase
from extraction.document_ai import DocumentExtraction
from pipeline.importer import guess_content_type
from pipeline.review import ReviewEdits, ReviewSession, ReviewState


router = APIRouter()


class ExtractedUpload(CanonicalBase):
    """A document already extracted elsewhere, submitted for review."""
    filename: str
    mime_type: str = Field(default="application/octet-stream", alias="content_type")
    extraction: DocumentExtraction


def _get_session(request: Request, session_id: str) -> ReviewSession:
    session = request.app.state.reviews.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Review session {session_id} not found")
    return session


@router.post("/extract")
async def extract_document(request: Request, file: UploadFile = File(...)) -> dict:
    """Extract one image or PDF and open a review session for it."""
    state = request.app.state
    if state.inference_service is None:
        raise HTTPException(status_code=503, detail="Document extraction is not configured")

    filename = file.filename or "upload"
    mime_type = file.content_type or guess_content_type(filename)
    if mime_type == "application/octet-stream":
        mime_type = guess_content_type(filename)

    session = ReviewSession(state.store, filename, mime_type, state.settings)
    await session.extract(await file.read(), state.inference_service)
    if session.state == ReviewState.AWAITING_REVIEW:
        state.reviews.add(session)
    return session.snapshot()


@router.post("/review")
async def open_review(request: Request, upload: ExtractedUpload) -> dict:
    """Open a review session for a document extracted by a batch import."""
    state = request.app.state
    session = ReviewSession.from_extraction(
        state.store, upload.filename, upload.mime_type, upload.extraction, state.settings
    )
    state.reviews.add(session)
    return session.snapshot()


@router.get("/{session_id}")
async def get_document(request: Request, session_id: str) -> dict:
    return _get_session(request, session_id).snapshot()


@router.patch("/{session_id}")
async def update_document(request: Request, session_id: str, edits: ReviewEdits) -> dict:
    """Apply operator edits to an extracted document."""
    session = _get_session(request, session_id)
    try:
        session.apply_edits(edits)
    except InvalidReviewTransition as e:
        raise HTTPException(status_code=409, detail=e.message)
    return session.snapshot()


@router.post("/{session_id}/commit")
async def commit_document(request: Request, session_id: str) -> dict:
    """Commit the reviewed document or settlement to the ledger."""
    session = _get_session(request, session_id)
    try:
        session.commit()
    except InvalidReviewTransition as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if session.state == ReviewState.COMMITTED:
        request.app.state.reviews.remove(session_id)
    return session.snapshot()
