from datetime import datetime
from typing import Optional, TypedDict


class AttachmentDocument(TypedDict):
    file_name: str
    url: str


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    sender_role: str
    content: str
    attachment: Optional[AttachmentDocument]
    # server-assigned, UTC
    timestamp: datetime
    is_read: bool
