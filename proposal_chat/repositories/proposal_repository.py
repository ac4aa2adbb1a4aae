from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from proposal_chat.models.proposal import ProposalDocument
from proposal_chat.repositories.conversation_repository import to_object_id


class ProposalRepository:
    """Read-only view of proposals; they are managed elsewhere."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("proposals")

    async def get(self, proposal_id: str) -> Optional[ProposalDocument]:
        oid = to_object_id(proposal_id)
        if oid is None:
            return None
        doc = await self._collection.find_one({"_id": oid}, {"title": 1, "company_name": 1, "created_by": 1})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def list_ids_created_by(self, admin_id: str) -> List[str]:
        cur = self._collection.find({"created_by": admin_id}, {"_id": 1})
        items = await cur.to_list(length=None)
        return [str(it["_id"]) for it in items]
