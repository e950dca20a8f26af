import logging
from typing import Any, Dict, List, Optional, Sequence

from redis.exceptions import RedisError

from internchat.errors import ErrorKind, RepositoryError, gateway_errors
from internchat.models.conversation import ConversationDocument, ParticipantDocument
from internchat.models.message import MessageDocument
from internchat.repositories.conversation_repository import ConversationRepository
from internchat.repositories.message_repository import MessageRepository
from internchat.schemas.messaging import Conversation, Message, NewMessage, Participant
from internchat.services.subscription import MessageSubscription, OnError, OnInsert
from internchat.utils.realtime_bus import conversation_channel


logger = logging.getLogger(__name__)


def message_from_document(doc: MessageDocument) -> Message:
    return Message(
        id=str(doc["_id"]),
        conversation_id=doc["conversation_id"],
        sender_id=doc["sender_id"],
        sender_role=doc["sender_role"],
        content=doc.get("content") or "",
        attachment=doc.get("attachment"),
        timestamp=doc["timestamp"],
        is_read=bool(doc.get("is_read", False)),
    )


def conversation_from_documents(
    doc: ConversationDocument,
    members: Sequence[ParticipantDocument],
    unread_count: int = 0,
) -> Conversation:
    return Conversation(
        id=str(doc["_id"]),
        participants=[Participant(user_id=m["user_id"], role=m["role"]) for m in members],
        last_message=doc.get("last_message"),
        last_message_time=doc.get("last_message_at"),
        unread_count=max(unread_count, 0),
    )


class ChatService:
    """Stateless gateway facade used by controllers and HTTP routes."""

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository, bus) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._bus = bus

    async def ensure_indexes(self) -> None:
        with gateway_errors("ensure indexes"):
            await self._message_repo.ensure_indexes()
            await self._conversation_repo.ensure_indexes()

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        with gateway_errors("list conversations"):
            memberships = await self._conversation_repo.memberships_for_user(user_id)
            unread = {m["conversation_id"]: int(m.get("unread_count") or 0) for m in memberships}
            conversation_ids = list(unread)
            docs = await self._conversation_repo.get_by_ids(conversation_ids)
            members = await self._conversation_repo.participants_for(conversation_ids)

        by_conversation: Dict[str, List[ParticipantDocument]] = {}
        for member in members:
            by_conversation.setdefault(member["conversation_id"], []).append(member)
        return [
            conversation_from_documents(doc, by_conversation.get(doc["_id"], []), unread.get(doc["_id"], 0))
            for doc in docs
        ]

    async def list_messages(self, conversation_id: str, reader_id: Optional[str] = None) -> List[Message]:
        with gateway_errors(f"list messages of {conversation_id}"):
            if reader_id is not None:
                await self._require_participant(conversation_id, reader_id)
            docs = await self._message_repo.get_messages_by_conversation(conversation_id)
        return [message_from_document(doc) for doc in docs]

    async def send_message(self, new_message: NewMessage) -> Message:
        if new_message.is_blank():
            raise RepositoryError(ErrorKind.VALIDATION, "Message content cannot be empty")
        conversation_id = new_message.conversation_id
        attachment = new_message.attachment.model_dump() if new_message.attachment else None

        with gateway_errors(f"send message to {conversation_id}"):
            await self._require_participant(conversation_id, new_message.sender_id)
            saved = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=new_message.sender_id,
                sender_role=new_message.sender_role.value,
                content=new_message.content.strip(),
                attachment=attachment,
            )
            message = message_from_document(saved)
            await self._conversation_repo.update_on_new_message(
                conversation_id, message.preview, message.timestamp, message.sender_id
            )

        await self._publish(message)
        return message

    async def _publish(self, message: Message) -> None:
        # The row is already stored; a bus failure only delays other viewers until their next fetch.
        try:
            await self._bus.publish(conversation_channel(message.conversation_id), message.model_dump_json())
        except (RedisError, OSError) as exc:
            logger.warning("Stored message %s but could not publish it: %s", message.id, exc)

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> None:
        with gateway_errors(f"mark {conversation_id} as read"):
            await self._require_participant(conversation_id, user_id)
            modified = await self._message_repo.mark_read(conversation_id, user_id)
            await self._conversation_repo.reset_unread(conversation_id, user_id)
        logger.debug("Marked %d messages read in %s for %s", modified, conversation_id, user_id)

    async def _require_participant(self, conversation_id: str, user_id: str) -> ParticipantDocument:
        member = await self._conversation_repo.get_participant(conversation_id, user_id)
        if member is None:
            raise RepositoryError(ErrorKind.NOT_AUTHORIZED, f"{user_id} is not a participant of {conversation_id}")
        return member

    def subscribe_to_messages(
        self,
        conversation_id: str,
        on_insert: OnInsert,
        on_error: Optional[OnError] = None,
    ) -> MessageSubscription:
        return MessageSubscription(self._bus, conversation_id, on_insert, on_error)

    async def create_conversation(self, participants: Sequence[Participant]) -> Conversation:
        if len(participants) < 2:
            raise RepositoryError(ErrorKind.VALIDATION, "A conversation needs at least two participants")
        if len({p.user_id for p in participants}) != len(participants):
            raise RepositoryError(ErrorKind.VALIDATION, "Participants must be distinct users")

        rows: List[Dict[str, Any]] = [{"user_id": p.user_id, "role": p.role.value} for p in participants]
        with gateway_errors("create conversation"):
            doc = await self._conversation_repo.create(rows)
        logger.info("Created conversation %s for %s", doc["_id"], ", ".join(p.user_id for p in participants))
        return Conversation(id=doc["_id"], participants=list(participants))

    async def get_or_create_conversation(self, first: Participant, second: Participant) -> Conversation:
        if first.user_id == second.user_id:
            raise RepositoryError(ErrorKind.VALIDATION, "Cannot start a conversation with yourself")

        with gateway_errors("find conversation"):
            memberships = await self._conversation_repo.memberships_for_user(first.user_id)
            candidate_ids = [m["conversation_id"] for m in memberships]
            members = await self._conversation_repo.participants_for(candidate_ids)

        by_conversation: Dict[str, List[ParticipantDocument]] = {}
        for member in members:
            by_conversation.setdefault(member["conversation_id"], []).append(member)
        for conversation_id, rows in by_conversation.items():
            user_ids = {row["user_id"] for row in rows}
            if user_ids == {first.user_id, second.user_id}:
                with gateway_errors("find conversation"):
                    docs = await self._conversation_repo.get_by_ids([conversation_id])
                if docs:
                    unread = next((int(m.get("unread_count") or 0) for m in memberships if m["conversation_id"] == conversation_id), 0)
                    return conversation_from_documents(docs[0], rows, unread)

        return await self.create_conversation([first, second])
