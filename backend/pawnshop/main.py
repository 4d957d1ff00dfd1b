"""Pawn-shop Financial Posting Core - FastAPI entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pawnshop.config import settings
from pawnshop.database import engine, Base
from pawnshop.exceptions import PawnshopError
from pawnshop.middleware.error_capture import ErrorCaptureMiddleware
from pawnshop.api import payments, ledger, reports
from pawnshop.services.gateway.adapter import GatewayConfig, build_gateway

import pawnshop.models  # noqa: F401  (register tables on Base.metadata)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the gateway; create tables on startup (dev only, prod uses Alembic)."""
    app.state.gateway = build_gateway(GatewayConfig.from_settings())
    logger.info("Payment gateway: %s", app.state.gateway.provider_name)
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


app = FastAPI(
    title="Pawnshop Posting API",
    description="Payments, journal postings and financial reports for the pawn-shop platform",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = payments.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ── Error envelopes ──────────────────────────────────────────────


@app.exception_handler(PawnshopError)
async def pawnshop_error_handler(request: Request, exc: PawnshopError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_envelope()))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "success": False,
            "message": "Validation failed",
            "errors": [
                {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
                for err in exc.errors()
            ],
            "status": 400,
        }),
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "status": exc.status_code},
        headers=getattr(exc, "headers", None),
    )


# ── Security headers middleware ──────────────────────────────────


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


# Error capture middleware
app.add_middleware(ErrorCaptureMiddleware)

app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)

# Routers
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(ledger.router, prefix="/api/ledger", tags=["Ledger"])
app.include_router(reports.router, prefix="/api/reports", tags=["Reports"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "pawnshop-api", "version": "0.1.0"}
