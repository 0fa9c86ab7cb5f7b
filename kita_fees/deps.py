"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from kita_fees.deps import CurrentActor, DbSession

    async def my_endpoint(db: DbSession, actor: CurrentActor):
        # db is AsyncSession with get_db dependency injected
        # actor is the staff member from the X-User-Id header, or None
        ...
"""

from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from kita_fees.database import get_db


def get_current_actor(x_user_id: Annotated[str | None, Header(max_length=100)] = None) -> str | None:
    """Staff member recorded on audit fields. Authentication happens upstream."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[str | None, Depends(get_current_actor)]

__all__ = ["CurrentActor", "DbSession", "get_current_actor"]
