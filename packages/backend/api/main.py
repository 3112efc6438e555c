"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.deps import status_for
from api.routes import chat, engine, health, models
from core.config import settings
from core.errors import AssistantError
from core.factory import ServiceContainer, create_services_from_settings

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def _get_version() -> str:
    """Read the installed package version."""
    try:
        return f"v{version('harbor-assistant')}"
    except PackageNotFoundError:
        return "dev"


APP_VERSION = _get_version()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    services: ServiceContainer | None = getattr(app.state, "services", None)
    owned = services is None
    if owned:
        settings.ensure_directories()
        services = create_services_from_settings(settings)
        app.state.services = services

    yield

    # Shutdown
    if owned:
        await services.aclose()


async def assistant_error_handler(request: Request, exc: AssistantError) -> JSONResponse:
    """Map assistant errors to HTTP status codes."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.reason)
    return JSONResponse(status_code=status_code, content={"detail": exc.reason})


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    """Create the API application.

    Args:
        services: Prebuilt service container. When omitted, the lifespan
            builds one from settings and releases it on shutdown.
    """
    app = FastAPI(
        title="Harbor Assistant API",
        description="On-device chat assistant backend",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # CORS - wide open. This API only binds to 127.0.0.1 and is accessed by
    # the local app shell.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AssistantError, assistant_error_handler)

    # Routes
    app.include_router(health.router)
    app.include_router(models.router, prefix="/api")
    app.include_router(engine.router, prefix="/api")
    app.include_router(chat.router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"name": "Harbor Assistant API", "version": APP_VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
