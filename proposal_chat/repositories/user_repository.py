from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from proposal_chat.models.user import UserDocument
from proposal_chat.repositories.conversation_repository import to_object_id


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        user = await self._collection.find_one({"_id": oid}, {"email": 1, "full_name": 1, "role": 1})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_users_by_ids(self, user_ids: List[str]) -> Dict[str, UserDocument]:
        oids = [oid for oid in (to_object_id(u) for u in set(user_ids)) if oid is not None]
        if not oids:
            return {}
        cur = self._collection.find({"_id": {"$in": oids}}, {"email": 1, "full_name": 1, "role": 1})
        users = await cur.to_list(length=None)
        return {str(u["_id"]): {**u, "_id": str(u["_id"])} for u in users}
