from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.security import get_owner_id
from app.db.session import get_db_session
from app.scheduler.dispatcher import Dispatcher
from app.services.stream_hub import StreamHub
from app.settings import Settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_stream_hub(request: Request) -> StreamHub:
    return request.app.state.hub


def get_dispatcher(request: Request) -> Dispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not configured")
    return dispatcher


# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
OwnerId = Annotated[str, Depends(get_owner_id)]
Hub = Annotated[StreamHub, Depends(get_stream_hub)]
DispatcherDep = Annotated[Dispatcher, Depends(get_dispatcher)]
AppSettings = Annotated[Settings, Depends(get_settings)]
