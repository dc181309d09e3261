"""
Main FastAPI application for the RAG Support Engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from retrieval.errors import (
    BackendUnavailableError,
    DimensionMismatchError,
    NotFoundError,
    RAGError,
    ValidationError,
)

from .routes import datasets, consumers, search, context
from .services import Services

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    DimensionMismatchError: 409,
    BackendUnavailableError: 503,
}


async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "details": exc.details,
            "retryable": exc.retryable,
        },
    )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (defaults to get_settings())
        services: Prebuilt services; built from settings when omitted

    Returns:
        FastAPI app
    """
    settings = settings or (services.settings if services else get_settings())

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("RAG Support Engine starting up...")
        if getattr(app.state, "services", None) is None:
            app.state.services = Services.from_settings(settings)
        await app.state.services.startup()
        logger.info("RAG Support Engine ready")
        yield
        logger.info("RAG Support Engine shutting down...")
        await app.state.services.shutdown()

    app = FastAPI(
        title=settings.api_title,
        description="Document ingestion, similarity search and attributed context retrieval.",
        version=settings.api_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RAGError, rag_error_handler)

    app.include_router(datasets.router, prefix="/api/v1", tags=["Datasets"])
    app.include_router(consumers.router, prefix="/api/v1", tags=["Consumers"])
    app.include_router(search.router, prefix="/api/v1", tags=["Search"])
    app.include_router(context.router, prefix="/api/v1", tags=["Context"])

    @app.get("/")
    async def root():
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "operational",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        services = request.app.state.services
        return {
            "status": "healthy" if services is not None else "starting",
            "services": services.health() if services is not None else {},
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    s = get_settings()
    uvicorn.run(app, host=s.api_host, port=s.api_port)
