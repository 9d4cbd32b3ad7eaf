# AppStack - FastAPI Application

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from appstack import __version__
from appstack.api.routes import router
from appstack.core.errors import (
    AlreadyExists,
    AppStackError,
    ArchiveError,
    NotFound,
    ResourceExhausted,
)
from appstack.core.config import settings
from appstack.core.stack import Stack, build_stack

logging.basicConfig(
    level=settings.log_level.upper(), format="%(asctime)s  %(levelname)-8s  %(message)s"
)
logger = logging.getLogger("appstack")

_STATUS_CODES = (
    (NotFound, 404),
    (AlreadyExists, 409),
    (ResourceExhausted, 503),
    (ArchiveError, 400),
)


def _status_for(exc: AppStackError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


async def appstack_error_handler(request: Request, exc: AppStackError) -> JSONResponse:
    code = _status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(stack: Optional[Stack] = None) -> FastAPI:
    """Build the API around an explicitly owned stack."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown hooks."""
        if app.state.stack is None:
            app.state.stack = build_stack()
        app.state.stack.reload()
        logger.info("AppStack API started")
        yield
        logger.info("Stopping managed services...")
        app.state.stack.close()

    app = FastAPI(
        title="AppStack",
        description="REST API for local web-application stacks",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.stack = stack

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AppStackError, appstack_error_handler)

    # Include routes
    app.include_router(router)
    return app
