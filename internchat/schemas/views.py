from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from internchat.schemas.messaging import Conversation, Message, Participant


class ControllerState(str, Enum):

    IDLE = "idle"
    LOADING_CONVERSATIONS = "loading_conversations"
    CONVERSATIONS_READY = "conversations_ready"
    LOADING_MESSAGES = "loading_messages"
    MESSAGES_READY = "messages_ready"


class MessageView(BaseModel):

    message: Message
    status: Literal["sent", "pending", "failed"] = "sent"
    # set while the message has no server id yet
    temp_id: Optional[str] = None
    error: Optional[str] = None


class ConversationView(BaseModel):
    """Everything a messages screen renders; intents go back through the controller."""

    state: ControllerState
    conversations: List[Conversation] = Field(default_factory=list)
    selected_conversation: Optional[Conversation] = None
    # the other side of the selected conversation, for the header
    counterpart: Optional[Participant] = None
    messages: List[MessageView] = Field(default_factory=list)
    error: Optional[str] = None
    subscription_error: Optional[str] = None
    total_unread: int = 0
