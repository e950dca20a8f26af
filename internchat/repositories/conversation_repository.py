from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from internchat.models.conversation import ConversationDocument, ParticipantDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    @property
    def participants(self):
        return self._db["conversation_participants"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("last_message_at", DESCENDING)])
        await self.participants.create_index([("user_id", ASCENDING)])
        await self.participants.create_index(
            [("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True
        )

    async def create(self, participants: Iterable[Dict[str, str]]) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "created_at": now,
            "last_message": None,
            "last_message_at": None,
        }
        result = await self.collection.insert_one(doc)
        conversation_id = str(result.inserted_id)
        rows = [
            {
                "conversation_id": conversation_id,
                "user_id": p["user_id"],
                "role": p["role"],
                "unread_count": 0,
                "last_read_at": None,
            }
            for p in participants
        ]
        await self.participants.insert_many(rows)
        doc["_id"] = conversation_id
        return doc

    async def get_by_ids(self, conversation_ids: List[str]) -> List[ConversationDocument]:
        if not conversation_ids:
            return []
        query = {"_id": {"$in": [self._to_object_id(cid) for cid in conversation_ids]}}
        cursor = self.collection.find(query).sort([("last_message_at", DESCENDING), ("_id", DESCENDING)])
        items = await cursor.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def memberships_for_user(self, user_id: str) -> List[ParticipantDocument]:
        items = await self.participants.find({"user_id": user_id}).to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def participants_for(self, conversation_ids: List[str]) -> List[ParticipantDocument]:
        if not conversation_ids:
            return []
        items = await self.participants.find({"conversation_id": {"$in": conversation_ids}}).to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_participant(self, conversation_id: str, user_id: str) -> Optional[ParticipantDocument]:
        row = await self.participants.find_one({"conversation_id": conversation_id, "user_id": user_id})
        if row:
            row["_id"] = str(row.get("_id"))
        return row

    async def update_on_new_message(self, conversation_id: str, preview: str, sent_at: datetime, sender_id: str) -> None:
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id)},
            {"$set": {"last_message": preview, "last_message_at": sent_at}},
        )
        await self.participants.update_many(
            {"conversation_id": conversation_id, "user_id": {"$ne": sender_id}},
            {"$inc": {"unread_count": 1}},
        )

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        await self.participants.update_one(
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$set": {"unread_count": 0, "last_read_at": datetime.now(timezone.utc)}},
        )

    def _to_object_id(self, oid_hex: str) -> ObjectId:
        return ObjectId(oid_hex)
