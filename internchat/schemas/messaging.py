from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):

    STUDENT = "student"
    COMPANY = "company"


class Participant(BaseModel):

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


class Attachment(BaseModel):

    model_config = ConfigDict(frozen=True)

    file_name: str
    url: str


class Message(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    sender_role: Role
    content: str = ""
    attachment: Optional[Attachment] = None
    timestamp: datetime
    is_read: bool = False

    @property
    def preview(self) -> str:
        if self.content:
            return self.content[:200]
        return self.attachment.file_name if self.attachment else ""


class Conversation(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    participants: List[Participant] = Field(default_factory=list)
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    unread_count: int = Field(default=0, ge=0)


class NewMessage(BaseModel):

    conversation_id: str
    sender_id: str
    sender_role: Role
    content: str = ""
    attachment: Optional[Attachment] = None

    def is_blank(self) -> bool:
        return not self.content.strip() and self.attachment is None


class Viewer(BaseModel):
    """The signed-in user a controller or request acts for."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role

    def as_participant(self) -> Participant:
        return Participant(user_id=self.user_id, role=self.role)

    def counterpart(self, conversation: Conversation) -> Optional[Participant]:
        for participant in conversation.participants:
            if participant.user_id != self.user_id:
                return participant
        return None


class CreateConversationIn(BaseModel):

    participants: List[Participant]


class SendMessageIn(BaseModel):

    content: str = ""
    attachment: Optional[Attachment] = None
