"""Health check endpoints."""

from fastapi import APIRouter

from api.deps import ServicesDep
from core.interfaces import EnginePhase

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {"status": "healthy"}


@router.get("/health/ready")
async def readiness_check(services: ServicesDep) -> dict:
    """Readiness check including the inference engine."""
    state = services.engine.state
    ready = state.phase in (EnginePhase.READY, EnginePhase.GENERATING)
    return {
        "status": "ready" if ready else "not_ready",
        "services": {
            "engine": state.phase.value,
            "model": state.model_path,
            "download": services.downloads.state.value,
        },
    }
