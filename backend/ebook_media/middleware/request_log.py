import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ebook_media.core.logging_config import request_id_ctx_var

logger = logging.getLogger("ebook_media.request")

_REQUEST_ID_HEADER = "X-Request-ID"


def _incoming_request_id(request: Request) -> str:
    value = (request.headers.get(_REQUEST_ID_HEADER) or "").strip()
    if value and len(value) <= 128 and value.replace("-", "").isalnum():
        return value
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags every log record of a request with its id and logs one summary line per request."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request)
        token = request_id_ctx_var.set(request_id)
        started = time.monotonic()
        request.state.request_id = request_id
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            if response is not None:
                response.headers[_REQUEST_ID_HEADER] = request_id
                logger.info(
                    "request",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "status_code": response.status_code,
                        "duration_ms": duration_ms,
                    },
                )
            else:
                logger.error(
                    "request_failed",
                    extra={"path": request.url.path, "method": request.method, "duration_ms": duration_ms},
                )
            request_id_ctx_var.reset(token)
