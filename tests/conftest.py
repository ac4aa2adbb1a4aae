"""Shared fixtures: in-memory repositories behind the real MessageStore and a LocalBus."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId

from proposal_chat.errors import AttachmentTooLarge, NotFound
from proposal_chat.schemas.chat import Attachment
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.message_store import MessageStore
from proposal_chat.utils.realtime_bus import LocalBus, RealtimeEventBus

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)
_ticks = itertools.count()


def _now() -> datetime:
    # strictly increasing so ordering by created_at is deterministic
    return _BASE_TIME + timedelta(milliseconds=next(_ticks))


def new_id() -> str:
    return str(ObjectId())


class InMemoryConversationRepository:

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def ensure_indexes(self) -> None:
        return None

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = self.docs.get(conversation_id)
        return dict(doc) if doc else None

    async def find_by_participant(self, proposal_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        for doc in self.docs.values():
            if doc["proposal_id"] == proposal_id and doc["user_id"] == user_id:
                return dict(doc)
        return None

    async def create(self, proposal_id: str, user_id: str) -> Dict[str, Any]:
        existing = await self.find_by_participant(proposal_id, user_id)
        if existing is not None:
            return existing
        doc = {"_id": new_id(), "proposal_id": proposal_id, "user_id": user_id, "created_at": _now()}
        self.docs[doc["_id"]] = doc
        return dict(doc)

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        return [d["_id"] for d in self.docs.values() if d["user_id"] == user_id]

    async def list_ids_for_proposals(self, proposal_ids: List[str]) -> List[str]:
        return [d["_id"] for d in self.docs.values() if d["proposal_id"] in proposal_ids]

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        docs = [dict(d) for d in self.docs.values() if d["user_id"] == user_id]
        return sorted(docs, key=lambda d: d["created_at"], reverse=True)

    async def list_for_proposals(self, proposal_ids: List[str]) -> List[Dict[str, Any]]:
        docs = [dict(d) for d in self.docs.values() if d["proposal_id"] in proposal_ids]
        return sorted(docs, key=lambda d: d["created_at"], reverse=True)

    async def delete(self, conversation_id: str) -> bool:
        return self.docs.pop(conversation_id, None) is not None


class InMemoryMessageRepository:

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.fail_next_save: Optional[Exception] = None
        self.fail_next_mark_read: Optional[Exception] = None
        # when set, saves wait on it: lets a test look at the list while a send is in flight
        self.save_gate: Optional[asyncio.Event] = None
        self.mark_read_calls = 0

    async def ensure_indexes(self) -> None:
        return None

    async def save_message(
        self,
        conversation_id: str,
        author_id: str,
        body: str,
        attachment_url: Optional[str] = None,
        file_name: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.save_gate is not None:
            await self.save_gate.wait()
        if self.fail_next_save is not None:
            exc, self.fail_next_save = self.fail_next_save, None
            raise exc
        doc = {
            "_id": new_id(),
            "conversation_id": conversation_id,
            "author_id": author_id,
            "body": body,
            "created_at": _now(),
            "read": False,
            "attachment_url": attachment_url,
            "file_name": file_name,
            "client_message_id": client_message_id,
        }
        self.docs[doc["_id"]] = doc
        return dict(doc)

    async def get_messages_by_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        docs = [dict(d) for d in self.docs.values() if d["conversation_id"] == conversation_id]
        return sorted(docs, key=lambda d: d["created_at"])

    async def get_latest(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        docs = await self.get_messages_by_conversation(conversation_id)
        return docs[-1] if docs else None

    def _unread(self, conversation_ids: List[str], except_author_id: str) -> List[Dict[str, Any]]:
        return [
            d
            for d in self.docs.values()
            if d["conversation_id"] in conversation_ids and not d["read"] and d["author_id"] != except_author_id
        ]

    async def find_unread_ids(self, conversation_ids: List[str], except_author_id: str) -> List[str]:
        return [d["_id"] for d in self._unread(conversation_ids, except_author_id)]

    async def mark_read(self, message_ids: List[str], batch_id: Optional[str] = None) -> int:
        self.mark_read_calls += 1
        if self.fail_next_mark_read is not None:
            exc, self.fail_next_mark_read = self.fail_next_mark_read, None
            raise exc
        modified = 0
        for message_id in message_ids:
            doc = self.docs.get(message_id)
            if doc is not None and not doc["read"]:
                doc["read"] = True
                if batch_id:
                    doc["read_batch"] = batch_id
                modified += 1
        return modified

    async def get_by_read_batch(self, batch_id: str) -> List[Dict[str, Any]]:
        docs = [dict(d) for d in self.docs.values() if d.get("read_batch") == batch_id]
        return sorted(docs, key=lambda d: d["created_at"])

    async def conversation_ids_with_attachment(self, file_id: str) -> List[str]:
        marker = f"/attachments/{file_id}/"
        return sorted({d["conversation_id"] for d in self.docs.values() if marker in (d.get("attachment_url") or "")})

    async def count_unread(self, conversation_ids: List[str], exclude_author_id: str) -> int:
        return len(self._unread(conversation_ids, exclude_author_id))

    async def delete_for_conversation(self, conversation_id: str) -> int:
        ids = [m for m, d in self.docs.items() if d["conversation_id"] == conversation_id]
        for message_id in ids:
            del self.docs[message_id]
        return len(ids)


class InMemoryUserRepository:

    def __init__(self, users: List[Dict[str, Any]]) -> None:
        self.users = {u["_id"]: u for u in users}

    async def get_user_by_id(self, user_id: str) -> Optional[dict]:
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def get_users_by_ids(self, user_ids: List[str]) -> Dict[str, dict]:
        return {u: dict(self.users[u]) for u in set(user_ids) if u in self.users}


class InMemoryProposalRepository:

    def __init__(self, proposals: List[Dict[str, Any]]) -> None:
        self.proposals = {p["_id"]: p for p in proposals}

    async def get(self, proposal_id: str) -> Optional[dict]:
        doc = self.proposals.get(proposal_id)
        return dict(doc) if doc else None

    async def list_ids_created_by(self, admin_id: str) -> List[str]:
        return [p["_id"] for p in self.proposals.values() if p.get("created_by") == admin_id]


class FakeGridOut:

    def __init__(self, data: bytes, metadata: Dict[str, Any], chunk_size: int = 4) -> None:
        self.metadata = metadata
        self._chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]

    async def readchunk(self) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


class FakeUploader:

    def __init__(self, max_bytes: int = 20 * 1024 * 1024) -> None:
        self.max_bytes = max_bytes
        self.uploads: List[Dict[str, Any]] = []
        self.files: Dict[str, Dict[str, Any]] = {}
        self.fail: Optional[Exception] = None

    async def upload(self, data: bytes, file_name: str, owner_id: str, content_type: Optional[str] = None) -> Attachment:
        if len(data) > self.max_bytes:
            raise AttachmentTooLarge(len(data), self.max_bytes)
        if self.fail is not None:
            raise self.fail
        file_id = new_id()
        self.uploads.append({"file_name": file_name, "owner_id": owner_id, "size": len(data)})
        self.files[file_id] = {
            "data": data,
            "metadata": {"owner_id": owner_id, "original_name": file_name, "content_type": content_type},
        }
        return Attachment(url=f"https://files.test/attachments/{file_id}/{file_name}", file_name=file_name)

    async def open_download(self, file_id: str) -> FakeGridOut:
        stored = self.files.get(file_id)
        if stored is None:
            raise NotFound(f"Attachment {file_id} not found")
        return FakeGridOut(stored["data"], dict(stored["metadata"]))


class Repos:

    def __init__(self, users: List[Dict[str, Any]], proposals: List[Dict[str, Any]]) -> None:
        self.conversations = InMemoryConversationRepository()
        self.messages = InMemoryMessageRepository()
        self.users = InMemoryUserRepository(users)
        self.proposals = InMemoryProposalRepository(proposals)


@pytest.fixture
def admin() -> Viewer:
    return Viewer(id=new_id(), full_name="Ada Admin", email="ada@example.com", is_admin=True)


@pytest.fixture
def alice() -> Viewer:
    return Viewer(id=new_id(), full_name="Alice Applicant", email="alice@example.com")


@pytest.fixture
def bob() -> Viewer:
    return Viewer(id=new_id(), full_name=None, email="bob@example.com")


@pytest.fixture
def proposal_id(admin) -> str:
    return new_id()


@pytest.fixture
def repos(admin, alice, bob, proposal_id) -> Repos:
    users = [
        {"_id": v.id, "full_name": v.full_name, "email": v.email, "role": "admin" if v.is_admin else "user"}
        for v in (admin, alice, bob)
    ]
    proposals = [{"_id": proposal_id, "title": "Solar Farm", "company_name": "Sunco", "created_by": admin.id}]
    return Repos(users, proposals)


@pytest.fixture
async def bus():
    event_bus = RealtimeEventBus(LocalBus())
    yield event_bus
    await event_bus.close()


@pytest.fixture
def store(repos, bus) -> MessageStore:
    return MessageStore(repos.conversations, repos.messages, repos.users, repos.proposals, bus)


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def settle():
    """Let bus subscription tasks drain their queues."""

    async def _settle(delay: float = 0.02) -> None:
        await asyncio.sleep(delay)

    return _settle


@pytest.fixture
async def conversation(store, proposal_id, alice):
    """Alice's conversation with the proposal admin, with no messages yet."""
    return await store.create_conversation(proposal_id, alice.id)
