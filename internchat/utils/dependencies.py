from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import ValidationError

from internchat.database.connection import mongo_db_dependency
from internchat.repositories.conversation_repository import ConversationRepository
from internchat.repositories.message_repository import MessageRepository
from internchat.schemas.messaging import Viewer
from internchat.services.chat_service import ChatService
from internchat.utils.realtime_bus import get_bus


async def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    bus = await get_bus()
    return ChatService(MessageRepository(db), ConversationRepository(db), bus)


def resolve_viewer(user_id: Optional[str], role: Optional[str]) -> Optional[Viewer]:
    if not user_id or not role:
        return None
    try:
        return Viewer(user_id=user_id, role=role)
    except ValidationError:
        return None


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Viewer:
    # Sessions are issued upstream; the gateway in front of us forwards the verified identity.
    viewer = resolve_viewer(x_user_id, x_user_role)
    if viewer is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid user identity")
    return viewer
