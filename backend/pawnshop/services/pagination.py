"""Offset pagination for list reads."""

import math
from typing import Any

from sqlalchemy import Select, select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.exceptions import ValidationFailed

MAX_LIMIT = 200


async def paginate(
    db: AsyncSession, query: Select, *, page: int = 1, limit: int = 50
) -> tuple[list[Any], dict[str, Any]]:
    """Run *query* for one page and return ``(items, pagination)``."""
    if page < 1:
        raise ValidationFailed("page must be >= 1")
    if limit < 1 or limit > MAX_LIMIT:
        raise ValidationFailed(f"limit must be between 1 and {MAX_LIMIT}")

    count_q = select(sa_func.count()).select_from(query.order_by(None).subquery())
    total = (await db.execute(count_q)).scalar() or 0

    result = await db.execute(query.offset((page - 1) * limit).limit(limit))
    items = list(result.scalars().all())

    total_pages = math.ceil(total / limit) if total else 0
    return items, {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }
