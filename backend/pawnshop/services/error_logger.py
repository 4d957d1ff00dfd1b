"""Error recording for failures that must outlive the request or task.

Every call writes one line to the ``pawnshop.errors`` logger.  Given a
session, the failure is also stored in ``error_logs`` tagged with its
taxonomy kind and, where known, the business reference it concerns::

    await log_error(exc, db=db, source="tasks.sweep", reference=payment.receipt_no)

The middleware uses :func:`log_error_standalone`, which writes through its
own session so the row survives the rollback of the failed request.
"""

from __future__ import annotations

import logging
import traceback as tb_module
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.exceptions import PawnshopError
from pawnshop.models.error_log import ErrorLog, ErrorSeverity

logger = logging.getLogger("pawnshop.errors")


def _clip(value: object, max_len: int) -> str:
    # Strip control characters; keep line breaks for tracebacks
    text = "".join(ch if (ch >= " " or ch in "\n\t") else " " for ch in str(value))
    return text[:max_len]


def error_kind(exc: BaseException) -> str:
    return exc.kind if isinstance(exc, PawnshopError) else "unhandled"


def _origin(exc: BaseException) -> Optional[str]:
    """``file:function:line`` of the innermost frame."""
    frame = exc.__traceback__
    if frame is None:
        return None
    while frame.tb_next:
        frame = frame.tb_next
    code = frame.tb_frame.f_code
    return f"{code.co_filename}:{code.co_name}:{frame.tb_lineno}"


async def log_error(
    exc: BaseException,
    *,
    db: Optional[AsyncSession] = None,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    source: Optional[str] = None,
    reference: Optional[str] = None,
    request_method: Optional[str] = None,
    request_path: Optional[str] = None,
    status_code: Optional[int] = None,
    response_time_ms: Optional[float] = None,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None,
) -> Optional[ErrorLog]:
    kind = error_kind(exc)
    message = _clip(exc, 2000)
    where = source or _origin(exc)

    line = f"{kind} {type(exc).__name__}: {message}"
    if reference:
        line = f"[{reference}] {line}"
    if request_path:
        line = f"{request_method or '?'} {request_path} -> {line}"
    if severity == ErrorSeverity.WARNING:
        logger.warning(line)
    else:
        logger.error(line, exc_info=exc)

    if db is None:
        return None

    try:
        entry = ErrorLog(
            severity=severity,
            error_kind=kind,
            error_type=type(exc).__name__,
            message=message,
            traceback=_clip(
                "".join(tb_module.format_exception(type(exc), exc, exc.__traceback__)), 10000
            ),
            reference=reference[:40] if reference else None,
            source=_clip(where, 300) if where else None,
            request_method=request_method,
            request_path=_clip(request_path, 500) if request_path else None,
            status_code=status_code,
            response_time_ms=response_time_ms,
            user_id=user_id,
            ip_address=ip_address[:45] if ip_address else None,
        )
        db.add(entry)
        await db.flush()
        return entry
    except Exception as db_err:
        # Recording must never turn one failure into two
        logger.warning("Could not store error log: %s", db_err)
        return None


async def log_error_standalone(exc: BaseException, **kwargs) -> Optional[ErrorLog]:
    """Record *exc* through a dedicated session and commit it."""
    from pawnshop.database import async_session

    try:
        async with async_session() as db:
            entry = await log_error(exc, db=db, **kwargs)
            await db.commit()
            return entry
    except Exception as db_err:
        logger.warning("Could not open a session for the error log: %s", db_err)
        return None
