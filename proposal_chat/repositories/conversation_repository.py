from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from proposal_chat.models.conversation import ConversationDocument


def to_object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        # one conversation per (proposal, participant)
        await self.collection.create_index([("proposal_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        await self.collection.create_index([("created_at", DESCENDING)])

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def find_by_participant(self, proposal_id: str, user_id: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"proposal_id": proposal_id, "user_id": user_id})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def create(self, proposal_id: str, user_id: str) -> ConversationDocument:
        doc: ConversationDocument = {
            "proposal_id": proposal_id,
            "user_id": user_id,
            "created_at": datetime.now(timezone.utc),
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # the other party opened the chat first
            existing = await self.find_by_participant(proposal_id, user_id)
            if existing is None:
                raise
            return existing
        doc["_id"] = str(result.inserted_id)
        return doc

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        cur = self.collection.find({"user_id": user_id}, {"_id": 1})
        items = await cur.to_list(length=None)
        return [str(it["_id"]) for it in items]

    async def list_ids_for_proposals(self, proposal_ids: List[str]) -> List[str]:
        if not proposal_ids:
            return []
        cur = self.collection.find({"proposal_id": {"$in": proposal_ids}}, {"_id": 1})
        items = await cur.to_list(length=None)
        return [str(it["_id"]) for it in items]

    async def list_for_user(self, user_id: str) -> List[ConversationDocument]:
        cur = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING)
        items = await cur.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def list_for_proposals(self, proposal_ids: List[str]) -> List[ConversationDocument]:
        if not proposal_ids:
            return []
        cur = self.collection.find({"proposal_id": {"$in": proposal_ids}}).sort("created_at", DESCENDING)
        items = await cur.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def delete(self, conversation_id: str) -> bool:
        oid = to_object_id(conversation_id)
        if oid is None:
            return False
        result = await self.collection.delete_one({"_id": oid})
        return bool(result.deleted_count)
