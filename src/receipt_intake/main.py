from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from receipt_intake.api.router import router as api_router
from receipt_intake.bootstrap import bootstrap
from receipt_intake.core.config import Settings, settings as default_settings
from receipt_intake.core.db import Database, StorageError
from receipt_intake.core.errors import ReceiptIntakeError
from receipt_intake.core.logging import (
    RequestContextMiddleware,
    configure_logging,
    get_logger,
    log_event,
    log_exception,
)
from receipt_intake.core.storage import FileStaging
from receipt_intake.modules.extraction.ai import Extractor, GeminiExtractor
from receipt_intake.modules.receipts.service import ReceiptLifecycle

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None, *, extractor: Extractor | None = None
) -> FastAPI:
    app_settings = settings or default_settings
    configure_logging(app_settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = Database(app_settings.database_url)
        staging = FileStaging(
            staging_dir=app_settings.staging_dir, storage_root=app_settings.storage_root
        )
        try:
            await bootstrap(settings=app_settings, db=db, staging=staging)
        except Exception:
            log_exception(logger, "bootstrap.failure")
            await db.dispose()
            raise

        app.state.lifecycle = ReceiptLifecycle(
            db=db,
            staging=staging,
            extractor=extractor or GeminiExtractor.from_settings(app_settings),
            settings=app_settings,
        )
        try:
            yield
        finally:
            await db.dispose()
            log_event(logger, "app.shutdown")

    app = FastAPI(title="Receipt Intake", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router)

    @app.exception_handler(ReceiptIntakeError)
    async def _intake_error(request: Request, exc: ReceiptIntakeError) -> JSONResponse:
        log_event(
            logger,
            "http.request.failed",
            method=request.method,
            path=request.url.path,
            status_code=exc.status_code,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
        log_event(
            logger,
            "http.request.storage_error",
            method=request.method,
            path=request.url.path,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500, content={"message": "Storage error.", "error": str(exc)}
        )

    return app


app = create_app()
