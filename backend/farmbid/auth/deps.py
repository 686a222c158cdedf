"""FastAPI dependencies for the service's callers.

Dependencies:
  require_admin_token  → check X-Admin-Token against ADMIN_API_TOKEN
  get_acting_user      → load the user named by X-User-Id

FarmBid sits behind the marketplace's own login.  The marketplace calls
these endpoints with the shared admin token and names the user it acts
for in `X-User-Id`.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from farmbid.config import settings
from farmbid.database import get_db
from farmbid.models.user import User


async def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    if not settings.admin_api_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints are disabled",
        )
    if not x_admin_token or not secrets.compare_digest(
        x_admin_token, settings.admin_api_token
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )


async def get_acting_user(
    x_user_id: str | None = Header(default=None),
    _admin: None = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Return the user the caller acts for, or 401."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    user = await db.get(User, x_user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user
