from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Union

from internchat.errors import RepositoryError
from internchat.schemas.messaging import Message
from internchat.schemas.views import MessageView


@dataclass(frozen=True)
class Pending:
    temp_id: str
    message: Message


@dataclass(frozen=True)
class Confirmed:
    message: Message


@dataclass(frozen=True)
class Failed:
    temp_id: str
    message: Message
    reason: RepositoryError


Unsent = Union[Pending, Failed]
Entry = Union[Pending, Confirmed, Failed]


def to_view(entry: Entry) -> MessageView:
    if isinstance(entry, Confirmed):
        return MessageView(message=entry.message)
    if isinstance(entry, Pending):
        return MessageView(message=entry.message, status="pending", temp_id=entry.temp_id)
    return MessageView(message=entry.message, status="failed", temp_id=entry.temp_id, error=entry.reason.message)


def same_logical_message(draft: Message, stored: Message, window: timedelta) -> bool:
    return (
        draft.conversation_id == stored.conversation_id
        and draft.sender_id == stored.sender_id
        and draft.content == stored.content
        and draft.attachment == stored.attachment
        and abs(stored.timestamp - draft.timestamp) <= window
    )


class Outbox:
    """Sends without a server id yet, grouped by conversation in submission order."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[Unsent]] = {}

    def add(self, entry: Unsent) -> None:
        self._entries.setdefault(entry.message.conversation_id, []).append(entry)

    def entries(self, conversation_id: Optional[str]) -> List[Unsent]:
        if conversation_id is None:
            return []
        return list(self._entries.get(conversation_id, ()))

    def find(self, temp_id: str) -> Optional[Unsent]:
        for entries in self._entries.values():
            for entry in entries:
                if entry.temp_id == temp_id:
                    return entry
        return None

    def replace(self, temp_id: str, new_entry: Unsent) -> None:
        entries = self._entries.get(new_entry.message.conversation_id, [])
        for index, entry in enumerate(entries):
            if entry.temp_id == temp_id:
                entries[index] = new_entry
                return

    def remove(self, temp_id: str) -> Optional[Unsent]:
        for conversation_id, entries in self._entries.items():
            for index, entry in enumerate(entries):
                if entry.temp_id == temp_id:
                    del entries[index]
                    if not entries:
                        del self._entries[conversation_id]
                    return entry
        return None

    def claim(self, stored: Message, window: timedelta) -> Optional[Unsent]:
        """Remove and return the oldest unsent entry ``stored`` is the server copy of.

        Pending entries are preferred; a failed entry only matches when its
        send reached the gateway even though the call reported an error.
        """
        entries = self._entries.get(stored.conversation_id, [])
        for kind in (Pending, Failed):
            for entry in entries:
                if isinstance(entry, kind) and same_logical_message(entry.message, stored, window):
                    return self.remove(entry.temp_id)
        return None
