from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict

from app.api.deps import DbSession, OwnerId
from app.domain.states import NotificationType
from app.services.notifications import list_notifications

router = APIRouter()


class NotificationResponse(BaseModel):
    id: int
    job_id: UUID
    type: NotificationType
    payload: dict[str, Any]
    status: str
    created_at: datetime
    published_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


@router.get("", response_model=list[NotificationResponse])
async def get_notifications(session: DbSession, owner_id: OwnerId):
    return await list_notifications(session, owner_id)
