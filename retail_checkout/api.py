"""
FastAPI plumbing shared by every service: correlation id propagation,
rendering of checkout errors, and the health endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .errors import CheckoutError
from .logs import CORRELATION_HEADER, correlation_id

logger = logging.getLogger(__name__)


def install(app: FastAPI, service: str) -> None:
    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        token = correlation_id.set(request.headers.get(CORRELATION_HEADER, "-"))
        try:
            response = await call_next(request)
        finally:
            correlation_id.reset(token)
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        logger.info(
            "%s %s -> %s: %s", request.method, request.url.path, exc.error_kind, exc.message
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": service}
