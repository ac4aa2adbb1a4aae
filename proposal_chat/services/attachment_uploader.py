import logging
import os
from typing import Optional
from urllib.parse import quote
from uuid import uuid4

from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket
from pymongo.errors import PyMongoError

from proposal_chat.config import MAX_ATTACHMENT_BYTES
from proposal_chat.errors import AttachmentTooLarge, NotFound, UploadFailure
from proposal_chat.repositories.conversation_repository import to_object_id
from proposal_chat.schemas.chat import Attachment

logger = logging.getLogger(__name__)


class AttachmentUploader:
    """Stores chat attachments in GridFS. One size cap for every caller, user or admin."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        bucket_name: str = "chat",
        max_bytes: int = MAX_ATTACHMENT_BYTES,
        public_base_url: str = "",
    ) -> None:
        self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)
        self.max_bytes = max_bytes
        self._public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, db: AsyncIOMotorDatabase, settings) -> "AttachmentUploader":
        return cls(
            db,
            bucket_name=settings.attachment_bucket,
            max_bytes=settings.max_attachment_bytes,
            public_base_url=settings.public_base_url,
        )

    def check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise AttachmentTooLarge(size, self.max_bytes)

    def url_for(self, file_id: str, file_name: str) -> str:
        return f"{self._public_base_url}/attachments/{file_id}/{quote(file_name)}"

    async def upload(self, data: bytes, file_name: str, owner_id: str, content_type: Optional[str] = None) -> Attachment:
        self.check_size(len(data))
        ext = os.path.splitext(file_name)[1]
        stored_name = f"{owner_id}/{uuid4().hex}{ext}"
        try:
            file_id = await self._bucket.upload_from_stream(
                stored_name,
                data,
                metadata={"owner_id": owner_id, "original_name": file_name, "content_type": content_type},
            )
        except PyMongoError as exc:
            raise UploadFailure(f"Could not upload {file_name}: {exc}") from exc
        logger.info("Uploaded attachment %s (%d bytes) for %s", file_id, len(data), owner_id)
        return Attachment(url=self.url_for(str(file_id), file_name), file_name=file_name)

    async def open_download(self, file_id: str):
        oid = to_object_id(file_id)
        if oid is None:
            raise NotFound(f"Attachment {file_id} not found")
        try:
            return await self._bucket.open_download_stream(oid)
        except NoFile as exc:
            raise NotFound(f"Attachment {file_id} not found") from exc
