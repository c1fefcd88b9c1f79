"""FastAPI application factory for the plan management API."""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dca.api import routes
from dca.exceptions import (
    ChainExecutionError,
    DcaError,
    InsufficientBalance,
    LedgerConflict,
    MarketFeedError,
    NoMarketsAvailable,
    PlanNotFound,
    ValidationError,
)
from dca.logging import get_logger

logger = get_logger(__name__)

# Most specific first; InsufficientBalance is a ChainExecutionError
_STATUS_CODES: list[tuple[type[DcaError], int]] = [
    (ValidationError, 400),
    (PlanNotFound, 404),
    (LedgerConflict, 409),
    (InsufficientBalance, 422),
    (NoMarketsAvailable, 503),
    (MarketFeedError, 503),
    (ChainExecutionError, 502),
]


def status_for(exc: DcaError) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def _handle_dca_error(request: Request, exc: DcaError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "api_request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(
        content={"error": str(exc), "type": type(exc).__name__},
        status_code=status_code,
    )


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Components (plan_service, pipeline, runner, ranker, interest) are attached
    to ``app.state`` by the caller.
    """
    app = FastAPI(
        title="Recurring Investment Engine",
        lifespan=lifespan,
    )
    app.add_exception_handler(DcaError, _handle_dca_error)
    app.include_router(routes.router)
    return app
