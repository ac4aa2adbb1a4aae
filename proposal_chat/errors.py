from typing import Optional


class ChatError(Exception):

    pass


class AccessDenied(ChatError):
    """Caller is neither the conversation's participant nor the proposal's admin."""


class NotFound(ChatError):

    pass


class PersistFailure(ChatError):
    """The store rejected a write. ``draft`` carries the text to restore on a failed send."""

    def __init__(self, message: str, draft: Optional[str] = None) -> None:
        super().__init__(message)
        self.draft = draft


class UploadFailure(ChatError):

    pass


class AttachmentTooLarge(UploadFailure):

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Attachment is {size} bytes, maximum is {limit} bytes")
        self.size = size
        self.limit = limit


class SubscriptionFailure(ChatError):

    pass
