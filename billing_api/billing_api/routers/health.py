"""Liveness endpoint with a database round trip."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.dependencies import SessionFactoryDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(factory: SessionFactoryDep) -> dict[str, Any]:
    """Return service health.

    The endpoint always returns HTTP 200 so that load-balancers see the
    service as alive.  The ``db`` field indicates whether the database is
    reachable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
    }
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        result["db"] = "unreachable"
        result["status"] = "degraded"
    return result
