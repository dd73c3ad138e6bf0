"""
Autopilot - API Dependencies
============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from autopilot.core.database import get_db
from autopilot.core.engine.cycle_engine import CycleEngine


def get_engine(request: Request) -> CycleEngine:
    """The engine built in the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine not initialized",
        )
    return engine


# ==========================================================================
# Type Aliases for Dependencies
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
Engine = Annotated[CycleEngine, Depends(get_engine)]
