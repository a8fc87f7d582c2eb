"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends

from renalscan.agent.orchestrator import Orchestrator
from renalscan.api.deps import get_orchestrator
from renalscan.config import Settings, get_settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": "RenalScan"}


@router.get("/api/health/config")
async def config_check(settings: Settings = Depends(get_settings)):
    """Diagnostic endpoint: shows whether critical settings are configured (no secrets)."""
    return {
        "base_url_set": bool(settings.base_url),
        "api_key_set": bool(settings.api_key),
        "model_id": settings.model_id,
        "decision_policy": settings.decision_policy.value,
        "low_confidence_threshold": settings.low_confidence_threshold,
        "include_analytics": settings.include_analytics,
        "allow_remote_images": settings.allow_remote_images,
    }


@router.get("/api/health/model")
async def model_readiness(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """Check if the model endpoint is accepting requests."""
    ready = await orchestrator.check_readiness()
    return {
        "ready": ready,
        "model_id": settings.model_id,
        "base_url_set": bool(settings.base_url),
    }
