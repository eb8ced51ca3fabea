"""
FastAPI application entry point for the study-log service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from studylog import __version__
from studylog.config import get_settings
from studylog.errors import BackendError, ErrorKind
from studylog.routes import router

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.SCHEMA: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BACKEND: 502,
    ErrorKind.UNKNOWN: 502,
}


async def backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
    status_code = ERROR_STATUS[exc.kind]
    if status_code >= 500:
        logger.warning("%s %s: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind.value, "code": exc.code},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="SQL Practice Notes", version=__version__)
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(BackendError, backend_error_handler)
    return app


app = create_app()
