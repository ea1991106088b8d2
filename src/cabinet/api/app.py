"""FastAPI application factory for the cabinet service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cabinet.api.routes import router
from cabinet.config import get_settings
from cabinet.runtime import CabinetRuntime, create_runtime
from cabinet.shared.exceptions import (
    CabinetError,
    ConfigurationError,
    ConflictError,
    InvalidStateError,
    ScraperError,
    UnknownEntityError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[CabinetError], int], ...] = (
    (UnknownEntityError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (ConfigurationError, 422),
    (ScraperError, 502),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the runtime (building one if none was injected) and stop it on exit."""
    runtime: CabinetRuntime | None = app.state.runtime
    if runtime is None:
        runtime = await create_runtime(get_settings())
        app.state.runtime = runtime
    await runtime.start()
    try:
        yield
    finally:
        await runtime.shutdown()


async def _cabinet_error(request: Request, exc: Exception) -> JSONResponse:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status, content={"detail": str(exc)})
    logger.error("unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def create_app(runtime: CabinetRuntime | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(title="cabinet", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(CabinetError, _cabinet_error)
    app.include_router(router)
    return app


def main() -> None:
    """Serve the API with uvicorn using settings from the environment."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_level="info")


if __name__ == "__main__":
    main()
