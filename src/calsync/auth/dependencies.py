"""FastAPI dependencies for authentication.

## Usage

```python
from fastapi import Depends
from calsync.auth.dependencies import get_current_user
from calsync.database import User

@router.get("/status")
async def get_status(user: User = Depends(get_current_user)):
    ...
```
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calsync.auth.session import SessionData, verify_session_token
from calsync.config import get_settings
from calsync.database.connection import get_db_session
from calsync.database.models import User

logger = logging.getLogger(__name__)


async def get_session_data(request: Request) -> SessionData | None:
    """Extract and verify session data from the session cookie."""
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        return None
    return verify_session_token(token)


async def get_current_user(
    session: SessionData | None = Depends(get_session_data),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    """Get the current authenticated user.

    Raises 401 if there is no valid session or the user is inactive.
    """
    if session is not None:
        result = await db.execute(
            select(User).where(User.id == session.user_id, User.is_active.is_(True))
        )
        user = result.scalar_one_or_none()
        if user is not None:
            return user
        logger.warning(f"Session for non-existent/inactive user: {session.user_id}")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
