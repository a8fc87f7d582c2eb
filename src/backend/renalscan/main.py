"""
RenalScan: FastAPI Backend
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from renalscan.agent.orchestrator import Orchestrator
from renalscan.api import health, scans
from renalscan.config import get_settings
from renalscan.models.errors import USER_FACING_ERROR, InternalInvariantViolation
from renalscan.models.schemas import ScanResponse

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="RenalScan",
    description="Kidney CT scan classification and explanation via a multimodal language model",
    version="0.1.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["health"])
app.include_router(scans.router, prefix="/api/scans", tags=["scans"])


@app.exception_handler(InternalInvariantViolation)
async def invariant_violation_handler(request: Request, exc: InternalInvariantViolation):
    logger.error(f"Internal invariant violation on {request.url.path}: {exc}")
    body = ScanResponse(success=False, error=USER_FACING_ERROR, error_kind="internal_error")
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup():
    """Initialize services on startup."""
    # Log configuration (mask secrets)
    def _mask(val: str) -> str:
        if not val:
            return "(empty)"
        if len(val) <= 8:
            return "***"
        return val[:4] + "..." + val[-4:]

    logger.info("=== RenalScan Backend Starting ===")
    logger.info(f"  base_url                : {settings.base_url or '(empty)'}")
    logger.info(f"  model_id                : {settings.model_id}")
    logger.info(f"  api_key                 : {_mask(settings.api_key)}")
    logger.info(f"  request_timeout_seconds : {settings.request_timeout_seconds}")
    logger.info(f"  decision_policy         : {settings.decision_policy.value}")
    logger.info(f"  low_confidence_threshold: {settings.low_confidence_threshold}")
    logger.info(f"  include_analytics       : {settings.include_analytics}")
    logger.info(f"  allow_remote_images     : {settings.allow_remote_images}")
    logger.info(f"  allow_private_image_hosts: {settings.allow_private_image_hosts}")
    logger.info(f"  cors_origins            : {settings.cors_origins}")

    if not settings.api_key:
        logger.warning("RENALSCAN_API_KEY is empty -- model calls will likely fail!")

    app.state.orchestrator = Orchestrator.from_settings(settings)
