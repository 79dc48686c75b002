"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import FlowgateConfig
from ..errors import FlowgateError, ValidationFailed
from ..runtime import Runtime, create_runtime
from .routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime: Runtime = app.state.runtime
    await runtime.start()

    stop = asyncio.Event()
    sweep_task = None
    if runtime.config.cleanup.enabled:
        sweep_task = asyncio.create_task(runtime.sweeper.run_forever(stop=stop))
        logger.info(
            f"Background cleanup sweep every {runtime.config.cleanup.interval_seconds}s"
        )
    try:
        yield
    finally:
        stop.set()
        if sweep_task is not None:
            await sweep_task
        await runtime.close()


async def flowgate_error_handler(request: Request, exc: FlowgateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())[1:]) or None,
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    failure = ValidationFailed("Invalid request", errors=errors)
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


def create_app(
    runtime: Optional[Runtime] = None, config: Optional[FlowgateConfig] = None
) -> FastAPI:
    """Create the API application around ``runtime`` (built from config if omitted)."""
    runtime = runtime or create_runtime(config)

    app = FastAPI(title="Flowgate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(FlowgateError, flowgate_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
