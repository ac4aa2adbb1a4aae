import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from proposal_chat.errors import PersistFailure
from proposal_chat.repositories.conversation_repository import ConversationRepository
from proposal_chat.repositories.message_repository import MessageRepository
from proposal_chat.repositories.proposal_repository import ProposalRepository
from proposal_chat.repositories.user_repository import UserRepository
from proposal_chat.schemas.chat import (
    Attachment,
    AuthorInfo,
    ChangeEvent,
    ChatMessage,
    ConversationRef,
    ConversationSummary,
    ProposalInfo,
    UnreadScope,
)
from proposal_chat.utils.realtime_bus import RealtimeEventBus

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _author_from_user(user: Optional[dict]) -> Optional[AuthorInfo]:
    if not user:
        return None
    return AuthorInfo(full_name=user.get("full_name"), email=user.get("email"))


class MessageStore:
    """
    Persistence side of the chat: conversations, messages and the unread aggregates.

    Every successful write is followed by a change event on the bus, which is
    how other tabs, devices and participants learn about it.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        proposal_repo: ProposalRepository,
        bus: RealtimeEventBus,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._proposal_repo = proposal_repo
        self._bus = bus

    @classmethod
    def from_database(cls, db: AsyncIOMotorDatabase, bus: RealtimeEventBus) -> "MessageStore":
        return cls(
            ConversationRepository(db),
            MessageRepository(db),
            UserRepository(db),
            ProposalRepository(db),
            bus,
        )

    async def ensure_indexes(self) -> None:
        await self._conversation_repo.ensure_indexes()
        await self._message_repo.ensure_indexes()

    # conversations

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRef]:
        doc = await self._conversation_repo.get(conversation_id)
        return ConversationRef.from_document(doc) if doc else None

    async def find_conversation(self, proposal_id: str, user_id: str) -> Optional[ConversationRef]:
        doc = await self._conversation_repo.find_by_participant(proposal_id, user_id)
        return ConversationRef.from_document(doc) if doc else None

    async def create_conversation(self, proposal_id: str, user_id: str) -> ConversationRef:
        try:
            doc = await self._conversation_repo.create(proposal_id, user_id)
        except PyMongoError as exc:
            raise PersistFailure(f"Could not create conversation: {exc}") from exc
        logger.info("Created conversation %s for proposal %s and user %s", doc["_id"], proposal_id, user_id)
        return ConversationRef.from_document(doc)

    async def get_proposal(self, proposal_id: str) -> Optional[ProposalInfo]:
        doc = await self._proposal_repo.get(proposal_id)
        if not doc:
            return None
        return ProposalInfo(
            id=doc["_id"],
            title=doc.get("title"),
            company_name=doc.get("company_name"),
            created_by=doc.get("created_by"),
        )

    async def proposal_admin(self, proposal_id: str) -> Optional[str]:
        proposal = await self.get_proposal(proposal_id)
        return proposal.created_by if proposal else None

    async def can_access(self, conversation: ConversationRef, viewer_id: str) -> bool:
        if conversation.user_id == viewer_id:
            return True
        return await self.proposal_admin(conversation.proposal_id) == viewer_id

    async def can_view_attachment(self, file_id: str, viewer_id: str) -> bool:
        """True when the file is attached to a message in a conversation the viewer can access."""
        for conversation_id in await self._message_repo.conversation_ids_with_attachment(file_id):
            conversation = await self.get_conversation(conversation_id)
            if conversation is not None and await self.can_access(conversation, viewer_id):
                return True
        return False

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            deleted = await self._message_repo.delete_for_conversation(conversation_id)
            removed = await self._conversation_repo.delete(conversation_id)
        except PyMongoError as exc:
            raise PersistFailure(f"Could not delete conversation {conversation_id}: {exc}") from exc
        logger.info("Deleted conversation %s with %d messages", conversation_id, deleted)
        return removed

    # messages

    async def get_author(self, user_id: str) -> Optional[AuthorInfo]:
        return _author_from_user(await self._user_repo.get_user_by_id(user_id))

    async def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        docs = await self._message_repo.get_messages_by_conversation(conversation_id)
        users = await self._user_repo.get_users_by_ids([d["author_id"] for d in docs])
        return [ChatMessage.from_document(d, author=_author_from_user(users.get(d["author_id"]))) for d in docs]

    async def create_message(
        self,
        conversation_id: str,
        author_id: str,
        body: str,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
    ) -> ChatMessage:
        try:
            doc = await self._message_repo.save_message(
                conversation_id=conversation_id,
                author_id=author_id,
                body=body,
                attachment_url=attachment.url if attachment else None,
                file_name=attachment.file_name if attachment else None,
                client_message_id=client_message_id,
            )
        except PyMongoError as exc:
            raise PersistFailure(f"Could not save message: {exc}", draft=body) from exc
        message = ChatMessage.from_document(doc)
        await self._bus.publish_change(ChangeEvent(type="INSERT", conversation_id=conversation_id, message=message))
        return message

    async def _mark_read_in(self, conversation_ids: List[str], except_author_id: str) -> int:
        batch_id = uuid4().hex
        try:
            unread_ids = await self._message_repo.find_unread_ids(conversation_ids, except_author_id)
            if not unread_ids:
                return 0
            modified = await self._message_repo.mark_read(unread_ids, batch_id=batch_id)
            # only rows this call flipped; a concurrent reader publishes its own
            docs = await self._message_repo.get_by_read_batch(batch_id) if modified else []
        except PyMongoError as exc:
            raise PersistFailure(f"Could not mark messages as read: {exc}") from exc
        for doc in docs:
            message = ChatMessage.from_document(doc)
            await self._bus.publish_change(
                ChangeEvent(type="UPDATE", conversation_id=message.conversation_id, message=message, old_read=False)
            )
        return modified

    async def mark_read(self, conversation_id: str, except_author_id: str) -> int:
        return await self._mark_read_in([conversation_id], except_author_id)

    async def mark_all_read(self, viewer_id: str, scope: UnreadScope) -> int:
        conversation_ids = await self.conversation_ids_for(viewer_id, scope)
        return await self._mark_read_in(conversation_ids, viewer_id)

    # unread aggregates

    async def conversation_ids_for(self, viewer_id: str, scope: UnreadScope) -> List[str]:
        if scope == UnreadScope.ADMINISTERED:
            proposal_ids = await self._proposal_repo.list_ids_created_by(viewer_id)
            return await self._conversation_repo.list_ids_for_proposals(proposal_ids)
        return await self._conversation_repo.list_ids_for_user(viewer_id)

    async def count_unread(self, viewer_id: str, scope: UnreadScope) -> int:
        conversation_ids = await self.conversation_ids_for(viewer_id, scope)
        return await self._message_repo.count_unread(conversation_ids, viewer_id)

    async def count_unread_in(self, conversation_id: str, exclude_author_id: str) -> int:
        return await self._message_repo.count_unread([conversation_id], exclude_author_id)

    # chat list

    async def _summarize(self, doc: dict, viewer_id: str, proposals: Dict[str, Optional[ProposalInfo]]) -> ConversationSummary:
        conversation = ConversationRef.from_document(doc)
        if conversation.proposal_id not in proposals:
            proposals[conversation.proposal_id] = await self.get_proposal(conversation.proposal_id)
        proposal = proposals[conversation.proposal_id]
        participant = await self.get_author(conversation.user_id)
        latest = await self._message_repo.get_latest(conversation.id)
        unread = await self.count_unread_in(conversation.id, viewer_id)
        return ConversationSummary(
            id=conversation.id,
            proposal_id=conversation.proposal_id,
            user_id=conversation.user_id,
            proposal_title=(proposal.title if proposal and proposal.title else "Untitled Proposal"),
            company_name=proposal.company_name if proposal else None,
            participant_name=participant.full_name if participant else None,
            participant_email=participant.email if participant else None,
            last_message=latest.get("body") if latest else None,
            last_message_at=latest.get("created_at") if latest else None,
            unread_count=unread,
        )

    async def list_summaries(self, viewer_id: str, scope: UnreadScope) -> List[ConversationSummary]:
        if scope == UnreadScope.ADMINISTERED:
            proposal_ids = await self._proposal_repo.list_ids_created_by(viewer_id)
            docs = await self._conversation_repo.list_for_proposals(proposal_ids)
        else:
            docs = await self._conversation_repo.list_for_user(viewer_id)
        proposals: Dict[str, Optional[ProposalInfo]] = {}
        summaries = [await self._summarize(doc, viewer_id, proposals) for doc in docs]
        return sort_summaries(summaries)

    async def get_summary(self, conversation_id: str, viewer_id: str) -> Optional[ConversationSummary]:
        doc = await self._conversation_repo.get(conversation_id)
        if not doc:
            return None
        return await self._summarize(doc, viewer_id, {})


def sort_summaries(summaries: List[ConversationSummary]) -> List[ConversationSummary]:
    # most recent first, conversations without messages at the end
    return sorted(
        summaries,
        key=lambda s: (s.last_message_at is not None, s.last_message_at or _EPOCH),
        reverse=True,
    )
