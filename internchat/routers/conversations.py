from typing import List

from fastapi import APIRouter, Depends, status

from internchat.schemas.messaging import Conversation, CreateConversationIn, Message, NewMessage, SendMessageIn, Viewer
from internchat.services.chat_service import ChatService
from internchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=List[Conversation])
async def list_conversations(current_user: Viewer = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.list_conversations(current_user.user_id)


@router.post("", response_model=Conversation, status_code=status.HTTP_201_CREATED)
async def create_conversation(body: CreateConversationIn, current_user: Viewer = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    participants = list(body.participants)
    if all(p.user_id != current_user.user_id for p in participants):
        participants.insert(0, current_user.as_participant())
    if len(participants) == 2:
        return await service.get_or_create_conversation(participants[0], participants[1])
    return await service.create_conversation(participants)


@router.get("/{conversation_id}/messages", response_model=List[Message])
async def list_messages(conversation_id: str, current_user: Viewer = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.list_messages(conversation_id, reader_id=current_user.user_id)


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageIn, current_user: Viewer = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(
        NewMessage(
            conversation_id=conversation_id,
            sender_id=current_user.user_id,
            sender_role=current_user.role,
            content=body.content,
            attachment=body.attachment,
        )
    )


@router.post("/{conversation_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(conversation_id: str, current_user: Viewer = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.mark_conversation_as_read(conversation_id, current_user.user_id)
