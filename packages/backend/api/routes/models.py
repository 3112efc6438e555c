"""Model catalog, download and selection endpoints."""

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from api.deps import ServicesDep, get_descriptor
from core.interfaces import EnginePhase
from services.downloads import DownloadJob, DownloadState

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/models", tags=["models"])


class ModelInfo(BaseModel):
    """A catalog model merged with its local status."""

    id: str
    name: str
    description: str
    file_name: str
    size_bytes: int
    quantization: str
    context_length: int
    recommended: bool
    tags: list[str]
    downloaded: bool
    selected: bool
    loaded: bool
    download_path: str | None


class ModelListResponse(BaseModel):
    """Response listing all catalog models."""

    version: int
    recommended_id: str | None
    selected_id: str | None
    models: list[ModelInfo]


class DownloadStatusResponse(BaseModel):
    """State of the current download job."""

    state: str
    model_id: str | None = None
    progress: float = 0.0
    downloaded_bytes: int = 0
    total_bytes: int = 0
    path: str | None = None
    error: str | None = None


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _job_status(job: DownloadJob | None) -> DownloadStatusResponse:
    if job is None:
        return DownloadStatusResponse(state=DownloadState.IDLE.value)
    return DownloadStatusResponse(
        state=job.state.value,
        model_id=job.descriptor.id,
        progress=job.progress,
        downloaded_bytes=job.bytes_written,
        total_bytes=job.total_bytes,
        path=str(job.path) if job.path and job.state == DownloadState.COMPLETED else None,
        error=job.reason,
    )


# ── Catalog ────────────────────────────────────────────────────────────

@router.get("", response_model=ModelListResponse)
async def list_models(services: ServicesDep, refresh: bool = False) -> ModelListResponse:
    """Return the model catalog merged with download, selection and load status."""
    catalog = await services.get_catalog(refresh=refresh)
    store = services.store
    selected_id = store.selected_model_id
    state = services.engine.state
    loaded_path = state.model_path if state.phase in (EnginePhase.READY, EnginePhase.GENERATING) else None

    items: list[ModelInfo] = []
    for model in catalog.models:
        path = store.path_for(model.file_name)
        downloaded = store.is_downloaded(model.file_name)
        items.append(ModelInfo(
            id=model.id,
            name=model.display_name,
            description=model.description,
            file_name=model.file_name,
            size_bytes=model.size_bytes,
            quantization=model.quantization_tag,
            context_length=model.context_length,
            recommended=model.is_recommended,
            tags=list(model.capability_tags),
            downloaded=downloaded,
            selected=(model.id == selected_id),
            loaded=loaded_path is not None and loaded_path == str(path),
            download_path=str(path) if downloaded else None,
        ))

    recommended = catalog.recommended()
    return ModelListResponse(
        version=catalog.version,
        recommended_id=recommended.id if recommended else None,
        selected_id=selected_id,
        models=items,
    )


# ── Downloads ──────────────────────────────────────────────────────────

@router.get("/download", response_model=DownloadStatusResponse)
async def get_download_status(services: ServicesDep) -> DownloadStatusResponse:
    """Current (or last finished) download job."""
    return _job_status(services.downloads.job)


@router.post("/download/cancel")
async def cancel_download(services: ServicesDep) -> dict:
    """Request cancellation of the active download."""
    return {"cancelled": services.downloads.cancel()}


@router.post("/{model_id}/download")
async def download_model(model_id: str, services: ServicesDep) -> StreamingResponse:
    """Download a model, streaming progress via SSE.

    The download keeps running if the client disconnects; its state stays
    available from ``GET /models/download``.
    """
    descriptor = await get_descriptor(services, model_id)
    if services.store.is_downloaded(descriptor.file_name):
        raise HTTPException(status_code=409, detail="Model already downloaded")

    events: asyncio.Queue[tuple[float, int]] = asyncio.Queue()

    def on_progress(progress: float, bytes_written: int) -> None:
        events.put_nowait((progress, bytes_written))

    coordinator = services.downloads
    if not coordinator.start(descriptor, on_progress):
        raise HTTPException(status_code=409, detail="A download is already in progress")
    job = coordinator.job

    def progress_event(progress: float, bytes_written: int) -> str:
        return _sse({
            "status": "progress",
            "model_id": model_id,
            "progress": progress,
            "downloaded_bytes": bytes_written,
            "total_bytes": job.total_bytes,
        })

    async def _stream_progress():
        yield _sse({"status": "starting", "model_id": model_id})

        finished = asyncio.ensure_future(coordinator.wait())
        try:
            while not finished.done():
                next_event = asyncio.ensure_future(events.get())
                await asyncio.wait({next_event, finished}, return_when=asyncio.FIRST_COMPLETED)
                if next_event.done():
                    yield progress_event(*next_event.result())
                else:
                    next_event.cancel()

            while not events.empty():
                yield progress_event(*events.get_nowait())
        finally:
            # Only stops waiting; the download itself is shielded
            if not finished.done():
                finished.cancel()

        if job.state == DownloadState.COMPLETED:
            yield _sse({
                "status": "complete",
                "model_id": model_id,
                "path": str(job.path),
                "selected": services.store.selected_model_id == model_id,
            })
        elif job.state == DownloadState.CANCELLED:
            yield _sse({"status": "cancelled", "model_id": model_id})
        else:
            yield _sse({"status": "error", "model_id": model_id, "error": job.reason})

    return StreamingResponse(_stream_progress(), media_type="text/event-stream")


# ── Selection ──────────────────────────────────────────────────────────

@router.post("/{model_id}/select")
async def select_model(model_id: str, services: ServicesDep) -> dict:
    """Set a downloaded model as the selected model."""
    descriptor = await get_descriptor(services, model_id)
    if not services.store.is_downloaded(descriptor.file_name):
        raise HTTPException(status_code=400, detail="Model is not downloaded")

    services.store.select_model(model_id)
    return {
        "status": "selected",
        "model_id": model_id,
        "path": str(services.store.path_for(descriptor.file_name)),
    }


@router.delete("/{model_id}")
async def delete_model(model_id: str, services: ServicesDep) -> dict:
    """Delete a downloaded model file. Refused while the model is loaded."""
    descriptor = await get_descriptor(services, model_id)
    store = services.store

    if store.is_in_use(descriptor.file_name):
        raise HTTPException(status_code=409, detail="Model is loaded; unload it first")
    if not store.delete(descriptor.file_name):
        raise HTTPException(status_code=404, detail="Model file not found")

    if store.has_explicit_selection() and store.selected_model_id == model_id:
        store.clear_selection()

    return {"status": "deleted", "model_id": model_id}
