"""
backend/wagerodds/main.py

Purpose:
    FastAPI application bootstrap: logging, odds engine lifecycle, middleware
    and router wiring, health and Prometheus endpoints.

Dependencies:
    - wagerodds.config
    - wagerodds.services.odds_engine
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from wagerodds.config import settings
from wagerodds.middleware.logging import StructuredLoggingMiddleware, setup_logging
from wagerodds.providers.base import OddsError
from wagerodds.routers.odds import router as odds_router
from wagerodds.services.odds_engine import OddsEngine
from wagerodds.utils import utcnow

logger = logging.getLogger("wagerodds")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    engine = OddsEngine.from_settings(settings)
    app.state.odds_engine = engine
    logger.info("Odds engine started with providers: %s", list(engine.adapters))

    yield

    await engine.aclose()
    logger.info("Odds engine stopped")


app = FastAPI(
    title="WagerOdds",
    description="Odds normalization and aggregation service",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
app.include_router(odds_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(OddsError)
async def odds_error_handler(request: Request, exc: OddsError):
    logger.error("Odds error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Odds aggregation failed.", "error": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health(request: Request):
    """Health check -- reports upstream circuit state per provider."""
    engine: OddsEngine = request.app.state.odds_engine
    providers = {p.provider_id: {"circuit_open": p.circuit_open} for p in engine.provider_status()}
    degraded = any(p["circuit_open"] for p in providers.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "time": utcnow().isoformat(),
        "providers": providers,
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
