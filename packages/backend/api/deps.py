"""Shared route dependencies and error mapping."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from core.errors import (
    AssistantError,
    EngineStateError,
    ModelNotFoundFailure,
    NetworkFailure,
    ValidationFailure,
)
from core.factory import ServiceContainer
from services.manifest import ModelDescriptor


def get_services(request: Request) -> ServiceContainer:
    """The service container created by the application lifespan."""
    return request.app.state.services


ServicesDep = Annotated[ServiceContainer, Depends(get_services)]


def status_for(exc: AssistantError) -> int:
    """HTTP status code for an assistant error."""
    if isinstance(exc, ModelNotFoundFailure):
        return 404
    if isinstance(exc, EngineStateError):
        return 409
    if isinstance(exc, ValidationFailure):
        return 422
    if isinstance(exc, NetworkFailure):
        return 502
    return 500


async def get_descriptor(services: ServiceContainer, model_id: str) -> ModelDescriptor:
    """Look up a catalog model or fail with 404."""
    catalog = await services.get_catalog()
    descriptor = catalog.get(model_id)
    if descriptor is None:
        raise HTTPException(status_code=404, detail="Model not in catalog")
    return descriptor
