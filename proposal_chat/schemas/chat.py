from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def first_or_none(value: Any) -> Any:
    """Joined sub-records come back as an object, a one-item list, an empty list or null."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


class UnreadScope(str, Enum):

    # conversations the viewer takes part in as the non-admin participant
    AUTHORED = "authored"
    # conversations on proposals the viewer created
    ADMINISTERED = "administered"


class AuthorInfo(BaseModel):

    full_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.full_name or self.email


class ProposalInfo(BaseModel):

    id: Optional[str] = None
    title: Optional[str] = None
    company_name: Optional[str] = None
    created_by: Optional[str] = None


class Attachment(BaseModel):

    url: str
    file_name: Optional[str] = None


class AttachmentUpload(BaseModel):
    """Raw file handed to ``ConversationHandle.send``; uploaded before the message is created."""

    data: bytes
    file_name: str
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


class ChatMessage(BaseModel):

    id: str
    conversation_id: str
    author_id: str
    body: str = ""
    created_at: datetime
    read: bool = False
    attachment: Optional[Attachment] = None
    author: Optional[AuthorInfo] = None
    client_message_id: Optional[str] = None
    # True while the entry still carries its temporary id
    pending: bool = False

    @field_validator("author", mode="before")
    @classmethod
    def _single_author(cls, value: Any) -> Any:
        return first_or_none(value)

    @classmethod
    def from_document(cls, doc: Dict[str, Any], author: Optional[AuthorInfo] = None) -> "ChatMessage":
        attachment = None
        if doc.get("attachment_url"):
            attachment = Attachment(url=doc["attachment_url"], file_name=doc.get("file_name"))
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            author_id=str(doc["author_id"]),
            body=doc.get("body") or "",
            created_at=doc["created_at"],
            read=bool(doc.get("read", False)),
            attachment=attachment,
            author=author if author is not None else doc.get("author"),
            client_message_id=doc.get("client_message_id"),
        )

    def is_unread_for(self, viewer_id: str) -> bool:
        return not self.read and self.author_id != viewer_id


class ConversationRef(BaseModel):

    id: str
    proposal_id: str
    user_id: str
    created_at: Optional[datetime] = None
    proposal: Optional[ProposalInfo] = None
    participant: Optional[AuthorInfo] = None

    @field_validator("proposal", "participant", mode="before")
    @classmethod
    def _single_record(cls, value: Any) -> Any:
        return first_or_none(value)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ConversationRef":
        return cls(
            id=str(doc["_id"]),
            proposal_id=str(doc["proposal_id"]),
            user_id=str(doc["user_id"]),
            created_at=doc.get("created_at"),
            proposal=doc.get("proposal"),
            participant=doc.get("participant"),
        )


class ConversationSummary(BaseModel):
    """One row of a chat list: who, about which proposal, last message and unread badge."""

    id: str
    proposal_id: str
    user_id: str
    proposal_title: str = "Untitled Proposal"
    company_name: Optional[str] = None
    participant_name: Optional[str] = None
    participant_email: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0


class TypingSignal(BaseModel):

    author_id: str
    display_name: Optional[str] = None
    timestamp: datetime


class ChangeEvent(BaseModel):
    """Row change published on the bus after every message write."""

    type: Literal["INSERT", "UPDATE"]
    table: str = "chat_messages"
    conversation_id: str
    message: ChatMessage
    old_read: Optional[bool] = None


class BroadcastFrame(BaseModel):

    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class OpenConversationRequest(BaseModel):
    """``user_id`` is only meaningful for admins opening a participant's conversation."""

    proposal_id: str
    user_id: Optional[str] = None
