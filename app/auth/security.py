import logging
from typing import Optional

from fastapi import Header, HTTPException

logger = logging.getLogger(__name__)

OWNER_HEADER = "X-Owner-ID"


async def get_owner_id(x_owner_id: Optional[str] = Header(default=None, alias=OWNER_HEADER)) -> str:
    """
    Resolves the calling identity. Authentication happens upstream; this service
    only scopes jobs to the owner it is told about.
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail=f"Missing {OWNER_HEADER} header")
    return x_owner_id.strip()
