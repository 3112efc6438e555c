"""Inference engine lifecycle endpoints."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from api.deps import ServicesDep, get_descriptor
from core.interfaces import EnginePhase

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/engine", tags=["engine"])


class EngineStatusResponse(BaseModel):
    """Response model for engine status."""

    phase: str
    progress: float
    error: str | None
    model_path: str | None
    info: dict


class LoadRequest(BaseModel):
    """Request to load a model. Defaults to the selected model."""

    model_id: str | None = None


async def _status(services) -> EngineStatusResponse:
    state = services.engine.state
    return EngineStatusResponse(
        phase=state.phase.value,
        progress=state.progress,
        error=state.error,
        model_path=state.model_path,
        info=await services.engine.get_service_info(),
    )


@router.get("/status", response_model=EngineStatusResponse)
async def get_engine_status(services: ServicesDep) -> EngineStatusResponse:
    """Get the engine phase and loaded model."""
    return await _status(services)


@router.post("/load", response_model=EngineStatusResponse)
async def load_model(services: ServicesDep, request: LoadRequest | None = None) -> EngineStatusResponse:
    """Load a downloaded model into the engine, replacing any loaded model."""
    # Resolving the catalog also settles the default selection
    await services.get_catalog()
    model_id = (request.model_id if request else None) or services.store.selected_model_id
    if model_id is None:
        raise HTTPException(status_code=400, detail="No model selected")

    descriptor = await get_descriptor(services, model_id)
    store = services.store
    if not store.is_downloaded(descriptor.file_name):
        raise HTTPException(status_code=400, detail="Model is not downloaded")

    path = str(store.path_for(descriptor.file_name))
    engine = services.engine
    state = engine.state
    if state.phase in (EnginePhase.READY, EnginePhase.GENERATING):
        if state.model_path == path:
            return await _status(services)
        logger.info("Switching model to %s", descriptor.id)
        await engine.dispose()

    await engine.load(path, services.load_config())
    return await _status(services)


@router.post("/unload", response_model=EngineStatusResponse)
async def unload_model(services: ServicesDep) -> EngineStatusResponse:
    """Release the loaded model, cancelling any running generation."""
    await services.engine.dispose()
    return await _status(services)
