import uuid
from contextvars import ContextVar
from typing import Callable

import structlog
from django.http import HttpRequest, HttpResponse

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

logger = structlog.get_logger()


def bind_correlation_id(cid: str | None = None, **extra: str) -> str:
    """Reset the structlog context and bind a correlation ID to it.

    Shared by the HTTP middleware and the Celery tasks so a fulfillment
    drain can be traced back to the request or schedule that started it.
    """
    cid = cid or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid, **extra)
    return cid


class CorrelationIdMiddleware:
    """Extracts or generates a correlation ID for each request.

    Reads the X-Request-ID header and falls back to a fresh UUID4. The ID
    is echoed back in the X-Request-ID response header.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        cid = bind_correlation_id(request.META.get("HTTP_X_REQUEST_ID"))

        logger.info(
            "request_started",
            method=request.method,
            path=request.get_full_path(),
        )

        response = self.get_response(request)

        logger.info(
            "request_finished",
            method=request.method,
            path=request.get_full_path(),
            status_code=response.status_code,
        )

        response["X-Request-ID"] = cid
        return response
