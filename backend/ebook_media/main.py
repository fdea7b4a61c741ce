import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ebook_media.api.v1 import api_router
from ebook_media.core.config import settings
from ebook_media.core.logging_config import configure_logging, request_id_ctx_var
from ebook_media.core.sentry import init_sentry
from ebook_media.core.startup_checks import validate_runtime_settings
from ebook_media.middleware import RequestLoggingMiddleware
from ebook_media.schemas.error import ErrorResponse
from ebook_media.services.blob_storage import BlobStorageNotConfiguredError
from ebook_media.services.media_ledger import MediaBackendUnavailableError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, detail, code: str | None) -> JSONResponse:
    payload = ErrorResponse(detail=detail, code=code, request_id=request_id_ctx_var.get())
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.model_dump()))


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    validate_runtime_settings()
    init_sentry("api")
    tags_metadata = [
        {"name": "ebook-media", "description": "Ebook media usage ledger, deletion queue, GC and audit"},
        {"name": "health", "description": "Liveness probe"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, exc.detail, None)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(422, jsonable_encoder(exc.errors()), "validation_error")

    @app.exception_handler(MediaBackendUnavailableError)
    async def backend_unavailable_handler(request: Request, exc: MediaBackendUnavailableError):
        logger.error("media_backend_unavailable", extra={"path": request.url.path, "error": str(exc)})
        return _error_response(503, str(exc), "backend_unavailable")

    @app.exception_handler(BlobStorageNotConfiguredError)
    async def storage_not_configured_handler(request: Request, exc: BlobStorageNotConfiguredError):
        logger.error("blob_storage_not_configured", extra={"path": request.url.path, "error": str(exc)})
        return _error_response(503, str(exc), "storage_not_configured")

    return app


app = get_application()
