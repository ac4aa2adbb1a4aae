from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from proposal_chat.config import get_settings
from proposal_chat.database.connection import mongo_db_dependency
from proposal_chat.errors import AccessDenied, AttachmentTooLarge, ChatError, NotFound
from proposal_chat.repositories.user_repository import UserRepository
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.attachment_uploader import AttachmentUploader
from proposal_chat.services.message_store import MessageStore
from proposal_chat.utils.realtime_bus import get_bus
from proposal_chat.utils.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


async def user_from_token(token: Optional[str], db) -> Optional[dict]:
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except jwt.PyJWTError:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    return await UserRepository(db).get_user_by_id(sub)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(mongo_db_dependency),
) -> dict:
    user = await user_from_token(credentials.credentials if credentials else None, db)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_viewer(current_user: dict = Depends(get_current_user)) -> Viewer:
    return Viewer.from_user(current_user)


async def get_message_store(db=Depends(mongo_db_dependency)) -> MessageStore:
    return MessageStore.from_database(db, await get_bus())


def get_uploader(db=Depends(mongo_db_dependency)) -> AttachmentUploader:
    return AttachmentUploader.from_settings(db, get_settings())


def http_error(exc: ChatError) -> HTTPException:
    if isinstance(exc, AccessDenied):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AttachmentTooLarge):
        return HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
