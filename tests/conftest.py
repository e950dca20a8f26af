import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from internchat.errors import ErrorKind, RepositoryError
from internchat.schemas.messaging import Conversation, Message, NewMessage, Participant, Role, Viewer


T0 = datetime(2024, 5, 6, 8, 30, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_message(
    message_id: str,
    seconds: float,
    conversation_id: str = "conv_1",
    sender_id: str = "comp_1",
    content: str = "hi",
    **extra,
) -> Message:
    role = Role.STUDENT if sender_id.startswith("stu") else Role.COMPANY
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        sender_role=role,
        content=content,
        timestamp=at(seconds),
        **extra,
    )


def make_conversation(conversation_id: str, unread_count: int = 0) -> Conversation:
    return Conversation(
        id=conversation_id,
        participants=[
            Participant(user_id="stu_1", role=Role.STUDENT),
            Participant(user_id="comp_1", role=Role.COMPANY),
        ],
        last_message="hi",
        last_message_time=T0,
        unread_count=unread_count,
    )


class FakeHandle:

    def __init__(self, conversation_id: str, on_insert, on_error) -> None:
        self.conversation_id = conversation_id
        self.on_insert = on_insert
        self.on_error = on_error
        self.unsubscribe_calls = 0

    @property
    def live(self) -> bool:
        return self.unsubscribe_calls == 0

    def unsubscribe(self) -> None:
        self.unsubscribe_calls += 1

    def push(self, message: Message) -> None:
        self.on_insert(message)


class FakeChatService:
    """In-memory stand-in for ChatService with hooks to hold or fail calls."""

    def __init__(self) -> None:
        self.conversations: List[Conversation] = [
            make_conversation("conv_1", unread_count=2),
            make_conversation("conv_2", unread_count=1),
            make_conversation("conv_3"),
        ]
        self.messages: Dict[str, List[Message]] = {
            "conv_1": [make_message("m1", 1), make_message("m2", 2), make_message("m3", 3)],
            "conv_2": [make_message("m21", 1, conversation_id="conv_2", content="conv 2 only")],
            "conv_3": [make_message("m31", 1, conversation_id="conv_3", content="conv 3 only")],
        }
        self.handles: List[FakeHandle] = []
        self.sent: List[NewMessage] = []
        self.read_calls: List[tuple] = []
        self.list_error: Optional[RepositoryError] = None
        self.messages_error: Optional[RepositoryError] = None
        self.send_error: Optional[RepositoryError] = None
        self.fetch_gates: Dict[str, asyncio.Event] = {}
        self.send_gate: Optional[asyncio.Event] = None
        self.read_gate: Optional[asyncio.Event] = None
        self.send_ids = (f"msg_{n}" for n in itertools.count(99))
        self.on_send: Optional[Callable[[Message], None]] = None

    def hold_fetch(self, conversation_id: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.fetch_gates[conversation_id] = gate
        return gate

    @property
    def live_handles(self) -> List[FakeHandle]:
        return [h for h in self.handles if h.live]

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.conversations)

    async def list_messages(self, conversation_id: str, reader_id: Optional[str] = None) -> List[Message]:
        gate = self.fetch_gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        if self.messages_error is not None:
            raise self.messages_error
        if reader_id is not None and not any(
            c.id == conversation_id and any(p.user_id == reader_id for p in c.participants)
            for c in self.conversations
        ):
            raise RepositoryError(ErrorKind.NOT_AUTHORIZED, f"{reader_id} is not a participant of {conversation_id}")
        return list(self.messages.get(conversation_id, []))

    async def send_message(self, new_message: NewMessage) -> Message:
        self.sent.append(new_message)
        stored = Message(
            id=next(self.send_ids),
            conversation_id=new_message.conversation_id,
            sender_id=new_message.sender_id,
            sender_role=new_message.sender_role,
            content=new_message.content,
            attachment=new_message.attachment,
            timestamp=at(60),
        )
        if self.on_send is not None:
            self.on_send(stored)
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        return stored

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> None:
        self.read_calls.append((conversation_id, user_id))
        if self.read_gate is not None:
            await self.read_gate.wait()

    def subscribe_to_messages(self, conversation_id: str, on_insert, on_error=None) -> FakeHandle:
        handle = FakeHandle(conversation_id, on_insert, on_error)
        self.handles.append(handle)
        return handle


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def service() -> FakeChatService:
    return FakeChatService()


@pytest.fixture
def student() -> Viewer:
    return Viewer(user_id="stu_1", role=Role.STUDENT)
