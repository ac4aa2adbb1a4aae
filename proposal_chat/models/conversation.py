from datetime import datetime
from typing import TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    proposal_id: str
    # the non-admin participant; admins reach the thread through proposal.created_by
    user_id: str
    created_at: datetime
