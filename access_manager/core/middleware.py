"""Request tracing for the access API.

Each request runs with its id bound in ``request_id_var``. A log record
factory stamps that id on every record as ``%(request_id)s``, so queue,
reconciliation and webhook logs from one call can be grepped together.
Records created outside a request carry ``-``.
"""

import logging
import time
import uuid
from contextvars import ContextVar

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from access_manager.core.config import settings

logger = logging.getLogger("access_manager.http")

REQUEST_ID_HEADER = "X-Request-Id"
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Polled by load balancers; logged at DEBUG only.
QUIET_PATHS = {"/api/health"}

_factory_installed = False


def install_request_id_logging() -> None:
    """Wrap the log record factory once so every record has ``request_id``."""
    global _factory_installed
    if _factory_installed:
        return
    base_factory = logging.getLogRecordFactory()

    def factory(*args, **kwargs):
        record = base_factory(*args, **kwargs)
        record.request_id = request_id_var.get()
        return record

    logging.setLogRecordFactory(factory)
    _factory_installed = True


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the call and log the outcome."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.perf_counter()
        try:
            response: Response = await call_next(request)
            duration = round((time.perf_counter() - start_time) * 1000, 2)
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Response-Time-Ms"] = str(duration)

            level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
            logger.log(level, "%s %s -> %s in %sms", request.method, request.url.path, response.status_code, duration)
            return response
        finally:
            request_id_var.reset(token)


def setup_middleware(app: FastAPI) -> None:
    install_request_id_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.add_middleware(RequestIdMiddleware)
