from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from internchat.models.message import AttachmentDocument, MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("timestamp", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_role: str,
        content: str,
        attachment: Optional[AttachmentDocument] = None,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "sender_role": sender_role,
            "content": content,
            "attachment": attachment,
            "timestamp": datetime.now(timezone.utc),
            "is_read": False,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageDocument]:
        # _id breaks ties between rows sharing a timestamp
        cursor = self.collection.find({"conversation_id": conversation_id}).sort(
            [("timestamp", ASCENDING), ("_id", ASCENDING)]
        )
        items = await cursor.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        result = await self.collection.update_many(
            {"conversation_id": conversation_id, "sender_id": {"$ne": reader_id}, "is_read": False},
            {"$set": {"is_read": True}},
        )
        return result.modified_count or 0
