from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    author_id: str
    body: str
    created_at: datetime
    read: bool
    attachment_url: Optional[str]
    file_name: Optional[str]
    # temporary id assigned by the sending client, echoed back on the change feed
    client_message_id: Optional[str]
    # marker of the mark_read call that flipped this row
    read_batch: str
