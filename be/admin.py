"""Admin maintenance: deployment info and bulk data clearing."""
from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import delete, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .config import settings

logger = logging.getLogger(__name__)


class ClearTarget(str, Enum):
    ALL_DATA = "ALL_DATA"
    ANALYTICS_ONLY = "ANALYTICS_ONLY"


def database_location(url: str | None = None) -> dict[str, str | None]:
    """Backend, host and port of the configured database, without credentials."""
    parsed = make_url(url or settings.db.url)
    port = parsed.port
    if port is None and parsed.get_backend_name() == "postgresql":
        port = 5432
    return {
        "backend": parsed.get_backend_name(),
        "host": parsed.host,
        "port": str(port) if port is not None else None,
        "database": parsed.database,
    }


async def clear_data(session: AsyncSession, target: ClearTarget) -> int:
    """Clear project analytics, and with ALL_DATA every data record too.

    Returns:
        Number of records deleted
    """
    deleted = 0
    if target is ClearTarget.ALL_DATA:
        result = await session.execute(delete(models.DataRecord))
        deleted = result.rowcount or 0

    await session.execute(
        update(models.Project).values(last_task_analysis=None, last_feedback_analysis=None)
    )
    await session.commit()

    logger.warning(f"Admin clear {target.value}: {deleted} records deleted")
    return deleted
