from datetime import datetime
from typing import Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    created_at: datetime
    # display cache, refreshed on every new message
    last_message: Optional[str]
    last_message_at: Optional[datetime]


class ParticipantDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    user_id: str
    role: str
    # per-viewer unread counter
    unread_count: int
    last_read_at: Optional[datetime]
