"""
Request identity.

The web client generates a stable user id and sends it as X-User-ID. Browsers'
EventSource cannot set headers, so the stream endpoint also accepts it as the
`user_id` query parameter.
"""
from typing import Optional

from fastapi import Header, HTTPException, Query

MAX_USER_ID_LENGTH = 255


def _validate(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="User ID required. Please refresh the page.")
    user_id = user_id.strip()
    if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
        raise HTTPException(status_code=400, detail="Invalid user ID format")
    return user_id


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Get user ID from header (required for data isolation)

    Usage:
        @router.get("/endpoint")
        async def endpoint(user_id: str = Depends(get_user_id)):
            ...
    """
    return _validate(x_user_id)


async def get_stream_user_id(
    x_user_id: Optional[str] = Header(None),
    user_id: Optional[str] = Query(None),
) -> str:
    """Header first, query parameter as fallback for EventSource clients."""
    return _validate(x_user_id or user_id)
