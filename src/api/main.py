"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.observability import setup_observability
from src.api.persistence_profile import (
    app_persistence_profile_name,
    validate_persistence_profile_guardrails,
)
from src.api.routers.quotes import router as quote_lifecycle_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    logger.info("Quote lifecycle API started with profile %s", app_persistence_profile_name())
    yield


app = FastAPI(
    title="Quote Lifecycle API",
    version="0.1.0",
    description=(
        "Quote lifecycle and signature workflow service for the vision-benefits point of sale.\n\n"
        "Quotes move through `BUILDING`, `DRAFT`, `PRESENTED`, `SIGNED` and `COMPLETED`, or end "
        "in `CANCELLED` / `EXPIRED`. Every change is recorded in a hash-chained audit trail."
    ),
    openapi_tags=[
        {
            "name": "Quote Lifecycle",
            "description": (
                "Quote status transitions, signature capture, workflow status, and audit history."
            ),
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
app.include_router(quote_lifecycle_router)


@app.get("/health", tags=["Health"], summary="Liveness probe")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )
