from fastapi import APIRouter, Depends, HTTPException, status

from proposal_chat.errors import ChatError
from proposal_chat.schemas.chat import OpenConversationRequest
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.conversation_sync import ConversationKey, ConversationSynchronizer
from proposal_chat.services.message_store import MessageStore
from proposal_chat.services.unread_counter import default_scope
from proposal_chat.utils.dependencies import get_message_store, get_viewer, http_error
from proposal_chat.utils.realtime_bus import get_bus


router = APIRouter(prefix="/conversations", tags=["chat"])


async def _resolve(key: ConversationKey, store: MessageStore, viewer: Viewer):
    synchronizer = ConversationSynchronizer(store, await get_bus(), viewer)
    try:
        return await synchronizer.resolve(key)
    except ChatError as exc:
        raise http_error(exc) from exc


@router.get("")
async def list_conversations(viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    summaries = await store.list_summaries(viewer.id, default_scope(viewer))
    return {"items": [s.model_dump(mode="json") for s in summaries]}


@router.post("")
async def open_conversation(body: OpenConversationRequest, viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    key = ConversationKey.for_participant(body.proposal_id, body.user_id or viewer.id)
    conversation = await _resolve(key, store, viewer)
    return conversation.model_dump(mode="json")


@router.get("/unread")
async def unread_count(viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    count = await store.count_unread(viewer.id, default_scope(viewer))
    return {"count": count}


@router.post("/mark_all_read")
async def mark_all_read(viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    try:
        updated = await store.mark_all_read(viewer.id, default_scope(viewer))
    except ChatError as exc:
        raise http_error(exc) from exc
    return {"updated": updated}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    conversation = await _resolve(ConversationKey.by_id(conversation_id), store, viewer)
    messages = await store.list_messages(conversation.id)
    return {"items": [m.model_dump(mode="json") for m in messages]}


@router.post("/{conversation_id}/mark_read")
async def mark_read(conversation_id: str, viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    conversation = await _resolve(ConversationKey.by_id(conversation_id), store, viewer)
    try:
        updated = await store.mark_read(conversation.id, viewer.id)
    except ChatError as exc:
        raise http_error(exc) from exc
    return {"updated": updated}


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, viewer: Viewer = Depends(get_viewer), store: MessageStore = Depends(get_message_store)):
    conversation = await _resolve(ConversationKey.by_id(conversation_id), store, viewer)
    if await store.proposal_admin(conversation.proposal_id) != viewer.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the proposal admin can delete a conversation")
    try:
        await store.delete_conversation(conversation.id)
    except ChatError as exc:
        raise http_error(exc) from exc
    return {"deleted": True}
