"""FastAPI server for the fiscal document import pipeline.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import documents, health, imports, settlements
from core.config import Settings
from core.errors import ExtractionServiceError, IngestionError
from core.observability import configure_logging, get_logger
from extraction.inference import DocumentInferenceService, build_inference_service
from ledger.db import LedgerStore
from pipeline.review import ReviewRegistry

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    inference_service: Optional[DocumentInferenceService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings.from_env()
    store = store or LedgerStore(settings.ledger_db_path)

    if inference_service is None:
        try:
            inference_service = build_inference_service(settings)
        except ExtractionServiceError as e:
            logger.warning("Document extraction disabled: %s", e.message)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        store.init_db()
        logger.info("Fiscal import API starting up", extra_fields={"ledger": str(store.db_path)})

        yield

        logger.info("Fiscal import API shutting down")

    app = FastAPI(
        title="Fiscal Import API",
        description="Import NF-e XML and AI extracted fiscal documents into the payables ledger",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.state.settings = settings
    app.state.store = store
    app.state.inference_service = inference_service
    app.state.reviews = ReviewRegistry(max_age=timedelta(minutes=settings.review_session_ttl_minutes))

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IngestionError)
    async def ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message, "kind": exc.kind})

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(imports.router, prefix="/imports", tags=["Imports"])
    app.include_router(documents.router, prefix="/documents", tags=["Documents"])
    app.include_router(settlements.router, prefix="/settlements", tags=["Settlements"])

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = Settings.from_env()
    configure_logging(level=_settings.log_level, json_format=_settings.log_json)
    uvicorn.run("api.server:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
