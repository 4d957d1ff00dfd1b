"""Records unhandled request errors and 5xx responses in error_logs."""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Request, Response
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from pawnshop.models.error_log import ErrorSeverity
from pawnshop.services.error_logger import log_error_standalone

logger = logging.getLogger("pawnshop.middleware")


def _actor_id(request: Request) -> Optional[int]:
    """User id from the bearer token, or None when absent or unreadable."""
    from pawnshop.auth_utils import decode_token

    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        return None
    try:
        return int(decode_token(header[7:]).get("sub", 0)) or None
    except (JWTError, ValueError, TypeError):
        return None


class ErrorCaptureMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.monotonic()
        context = {
            "source": "middleware.error_capture",
            "request_method": request.method,
            "request_path": request.url.path,
            "user_id": _actor_id(request),
            "ip_address": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            await log_error_standalone(
                exc,
                severity=ErrorSeverity.CRITICAL,
                status_code=500,
                response_time_ms=round((time.monotonic() - start) * 1000, 2),
                **context,
            )
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Internal Server Error", "status": 500},
            )

        # 502 from the gateway adapter lands here too
        if response.status_code >= 500:
            await log_error_standalone(
                RuntimeError(f"HTTP {response.status_code} on {request.method} {request.url.path}"),
                status_code=response.status_code,
                response_time_ms=round((time.monotonic() - start) * 1000, 2),
                **context,
            )
        return response
