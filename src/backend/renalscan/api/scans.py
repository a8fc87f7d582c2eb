"""
REST API for scan analysis.

Requests are stateless: the image is analysed and the result returned in the
same response. Nothing is stored.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from renalscan.agent.orchestrator import Orchestrator
from renalscan.api.deps import get_orchestrator
from renalscan.config import Settings, get_settings
from renalscan.models.errors import AnalysisErrorKind
from renalscan.models.result import Fail
from renalscan.models.schemas import ImageReference, ImageUriSubmission, ScanResponse

logger = logging.getLogger(__name__)
router = APIRouter()

STATUS_BY_KIND = {
    AnalysisErrorKind.UNAVAILABLE: 502,
    AnalysisErrorKind.MALFORMED_OUTPUT: 502,
    AnalysisErrorKind.UNKNOWN: 502,
    AnalysisErrorKind.TIMEOUT: 504,
    AnalysisErrorKind.INVALID_INPUT: 422,
}


@router.post("/analyze", response_model=ScanResponse)
async def analyze_upload(
    file: UploadFile = File(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """Analyse an uploaded kidney CT image."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    mime_type = (file.content_type or "").lower()
    if not mime_type.startswith("image/"):
        raise HTTPException(status_code=415, detail=f"Unsupported file type: {mime_type or 'unknown'}")

    outcome = await orchestrator.analyze_image(content, mime_type)
    return _respond(outcome)


@router.post("/analyze-uri", response_model=ScanResponse)
async def analyze_uri(
    submission: ImageUriSubmission,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """Analyse an image given as a data URI or an http(s) URL."""
    try:
        image = ImageReference(uri=submission.image_uri)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors()[0]["msg"])
    if not image.is_inline and not settings.allow_remote_images:
        raise HTTPException(status_code=422, detail="Remote image URLs are disabled; send a data URI")

    outcome = await orchestrator.analyze(image)
    return _respond(outcome)


def _respond(outcome):
    if not isinstance(outcome, Fail):
        return ScanResponse(success=True, result=outcome.value)

    error = outcome.error
    logger.error(f"Analysis failed at {error.stage} ({error.kind.value}): {error.message}")
    body = ScanResponse(success=False, error=error.user_message, error_kind=error.kind.value)
    return JSONResponse(status_code=STATUS_BY_KIND[error.kind], content=body.model_dump(mode="json"))
