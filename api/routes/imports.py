"""Batch import endpoints."""

from typing import List, Optional

from fastapi import APIRouter, File, HTTPException, Request, UploadFile

from pipeline.importer import BatchImporter, FileImporter, FileState, UploadedFile
from pipeline.review import ReviewSession


router = APIRouter()


@router.post("/xml")
async def import_xml_files(request: Request, files: Optional[List[UploadFile]] = File(None)) -> dict:
    """Import a batch of NF-e XML files in the order they were sent.

    Returns the batch report; per-file failures are reported in it, not
    raised. Images and PDFs in the batch are extracted and each gets a
    review session, whose id is in its outcome.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files selected")

    uploads = [
        UploadedFile(filename=f.filename or "upload.xml", content=await f.read(), content_type=f.content_type)
        for f in files
    ]

    state = request.app.state
    importer = FileImporter(state.store, state.settings, inference_service=state.inference_service)
    batch = BatchImporter(importer)
    report = await batch.import_files(uploads)

    for outcome in report.outcomes:
        if outcome.state == FileState.AWAITING_REVIEW and outcome.extraction is not None:
            session = ReviewSession.from_extraction(
                state.store,
                outcome.filename,
                outcome.content_type,
                outcome.extraction,
                state.settings,
            )
            state.reviews.add(session)
            outcome.review_session_id = session.id

    result = report.to_dict()
    result["progress"] = batch.progress
    return result
