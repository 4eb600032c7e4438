"""
Shared FastAPI dependencies.

The mobile client identifies the signed-in user with a `userID` header
(the same header the processing server receives). An empty header means
nobody is signed in; require_user_session answers that with a 401 before
the route runs.

The processing server authenticates its status callbacks with the shared
PIPELINE_TOKEN in an `X-Pipeline-Token` header.
"""

import re
import secrets

from fastapi import Header, HTTPException

from app.config import settings
from app.services.feedback import UserSession

# Store-issued user ids are URL-safe; anything else could escape a storage path
USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{0,128}$")


async def get_user_session(user_id: str = Header("", alias="userID")) -> UserSession:
    user_id = user_id.strip()
    if not USER_ID_PATTERN.match(user_id):
        raise HTTPException(status_code=400, detail="Malformed userID header")
    return UserSession(user_id=user_id)


async def require_user_session(user_id: str = Header("", alias="userID")) -> UserSession:
    session = await get_user_session(user_id)
    if not session.is_authenticated:
        raise HTTPException(status_code=401, detail="User not logged in")
    return session


async def require_pipeline_token(token: str = Header("", alias="X-Pipeline-Token")) -> None:
    """Only the processing server may move a record along.

    401 when the header is missing, 403 when it doesn't match, and 503 when
    no token is configured at all.
    """
    if not settings.PIPELINE_TOKEN:
        raise HTTPException(status_code=503, detail="Pipeline callback is not configured")
    if not token:
        raise HTTPException(status_code=401, detail="Missing pipeline token")
    if not secrets.compare_digest(token.encode(), settings.PIPELINE_TOKEN.encode()):
        raise HTTPException(status_code=403, detail="Invalid pipeline token")
