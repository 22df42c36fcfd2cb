from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from relaydrop.config import Settings
from relaydrop.server.errors import TransferError, ValidationError
from relaydrop.server.routes import make_root_router, make_router
from relaydrop.server.state import AppState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


async def transfer_error_handler(request: Request, exc: TransferError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request fields the same way as other ValidationErrors."""
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part != "body")
        problems.append(f"{field}: {error['msg']}")
    message = "Invalid request: " + "; ".join(problems)
    return await transfer_error_handler(request, ValidationError(message))


def create_app(settings: Settings | None = None, **overrides: object) -> FastAPI:
    """Create a configured relaydrop FastAPI application.

    Args:
        settings: Base settings; ``Settings.from_env()`` when omitted.
        **overrides: Individual ``Settings`` fields to replace, e.g.
            ``uploads_dir`` or ``sweep_interval``. ``None`` values are ignored.
    """
    settings = (settings or Settings.from_env()).with_overrides(**overrides)
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    state = AppState.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await state.store.connect()
        sweeper_task = None
        if settings.sweep_interval > 0:
            sweeper_task = asyncio.create_task(
                state.sweeper.run_periodically(settings.sweep_interval)
            )
        logger.info("Uploads directory: %s", settings.uploads_dir)
        try:
            yield
        finally:
            if sweeper_task is not None:
                sweeper_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper_task
            await state.channel.close()
            await state.store.close()

    app = FastAPI(title="relaydrop", lifespan=lifespan)
    app.state = state
    app.add_exception_handler(TransferError, transfer_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(make_router(), prefix="/api")
    app.include_router(make_root_router())
    return app
