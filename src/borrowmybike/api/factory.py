"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from borrowmybike.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from borrowmybike.observability.logging import get_logger
from borrowmybike.observability.redaction import safe_log_context

from .routers import public, worker

AppRole = Literal["public", "worker"]

_ROLES: tuple[str, ...] = ("public", "worker")

logger = get_logger(__name__)


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "public" if env var is not set.

    The worker role serves the scheduler tasks in addition to the public
    routes; booking, admin and webhook routes are mounted on both.

    Raises:
        ValueError: Unknown role.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]
    if role not in _ROLES:
        raise ValueError(f"Invalid APP_ROLE: {role}")

    app = FastAPI(
        title="BorrowMyBike",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            try:
                response = await call_next(request)
            except Exception as exc:
                # Operators find the failing request's settlement logs by this ID
                logger.exception(
                    "unhandled error",
                    extra={
                        "extra_fields": safe_log_context(
                            path=request.url.path,
                            method=request.method,
                            error_type=type(exc).__name__,
                        )
                    },
                )
                response = JSONResponse(
                    status_code=500,
                    content={"detail": "Internal Server Error", "correlation_id": cid},
                )
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)

    if role == "worker":
        app.include_router(worker.router)

    logger.info("app created", extra={"extra_fields": safe_log_context(role=role)})
    return app
