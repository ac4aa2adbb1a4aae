import re
from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from proposal_chat.models.message import MessageDocument
from proposal_chat.repositories.conversation_repository import to_object_id


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["chat_messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index([("conversation_id", ASCENDING), ("read", ASCENDING), ("author_id", ASCENDING)])
        await self.collection.create_index("read_batch", sparse=True)

    async def save_message(
        self,
        conversation_id: str,
        author_id: str,
        body: str,
        attachment_url: Optional[str] = None,
        file_name: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "author_id": author_id,
            "body": body,
            "created_at": datetime.now(timezone.utc),
            "read": False,
            "attachment_url": attachment_url,
            "file_name": file_name,
            "client_message_id": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageDocument]:
        # full history, oldest first; there is no pagination contract for a chat thread
        cur = self.collection.find({"conversation_id": conversation_id}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        items = await cur.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_latest(self, conversation_id: str) -> Optional[MessageDocument]:
        doc = await self.collection.find_one({"conversation_id": conversation_id}, sort=[("created_at", DESCENDING)])
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def find_unread_ids(self, conversation_ids: List[str], except_author_id: str) -> List[str]:
        if not conversation_ids:
            return []
        cur = self.collection.find(
            {"conversation_id": {"$in": conversation_ids}, "read": False, "author_id": {"$ne": except_author_id}},
            {"_id": 1},
        )
        items = await cur.to_list(length=None)
        return [str(it["_id"]) for it in items]

    async def mark_read(self, message_ids: List[str], batch_id: Optional[str] = None) -> int:
        oids = [oid for oid in (to_object_id(m) for m in message_ids) if oid is not None]
        if not oids:
            return 0
        update = {"read": True}
        if batch_id:
            update["read_batch"] = batch_id
        # read=False stays in the filter so a concurrent reader never rewrites a row twice
        result = await self.collection.update_many({"_id": {"$in": oids}, "read": False}, {"$set": update})
        return result.modified_count or 0

    async def get_by_read_batch(self, batch_id: str) -> List[MessageDocument]:
        """Rows flipped by one ``mark_read`` call."""
        cur = self.collection.find({"read_batch": batch_id}).sort("created_at", ASCENDING)
        items = await cur.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def conversation_ids_with_attachment(self, file_id: str) -> List[str]:
        return await self.collection.distinct(
            "conversation_id", {"attachment_url": {"$regex": f"/attachments/{re.escape(file_id)}/"}}
        )

    async def count_unread(self, conversation_ids: List[str], exclude_author_id: str) -> int:
        if not conversation_ids:
            return 0
        return await self.collection.count_documents(
            {"conversation_id": {"$in": conversation_ids}, "read": False, "author_id": {"$ne": exclude_author_id}}
        )

    async def delete_for_conversation(self, conversation_id: str) -> int:
        result = await self.collection.delete_many({"conversation_id": conversation_id})
        return result.deleted_count or 0
