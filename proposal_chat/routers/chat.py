import json

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from proposal_chat.config import get_settings
from proposal_chat.database.connection import mongo_db_dependency
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.attachment_uploader import AttachmentUploader
from proposal_chat.services.conversation_list import ConversationListTracker
from proposal_chat.services.conversation_sync import ConversationSynchronizer
from proposal_chat.services.message_store import MessageStore
from proposal_chat.services.unread_counter import GlobalUnreadCounter
from proposal_chat.utils.dependencies import user_from_token
from proposal_chat.utils.realtime_bus import get_bus
from proposal_chat.utils.websocket_manager import ChatListSession, ChatSession


router = APIRouter(prefix="/chat", tags=["chat"])


@router.websocket("/ws/{conversation_id}")
async def chat_socket(websocket: WebSocket, conversation_id: str, db=Depends(mongo_db_dependency)):
    # JWT over the query string: ?token=...
    user = await user_from_token(websocket.query_params.get("token"), db)
    if user is None:
        await websocket.close(code=4401)
        return

    viewer = Viewer.from_user(user)
    settings = get_settings()
    bus = await get_bus()
    store = MessageStore.from_database(db, bus)
    counter = GlobalUnreadCounter(store, bus, viewer)
    synchronizer = ConversationSynchronizer.from_settings(
        store,
        bus,
        viewer,
        settings,
        uploader=AttachmentUploader.from_settings(db, settings),
        unread_counter=counter,
    )

    session = ChatSession(websocket, synchronizer, counter)
    if not await session.connect(conversation_id):
        return
    try:
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except ValueError:
                session.error("Invalid JSON frame")
                continue
            if not isinstance(frame, dict):
                session.error("Frames must be JSON objects")
                continue
            await session.handle_frame(frame)
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()


@router.websocket("/ws")
async def chat_list_socket(websocket: WebSocket, db=Depends(mongo_db_dependency)):
    user = await user_from_token(websocket.query_params.get("token"), db)
    if user is None:
        await websocket.close(code=4401)
        return

    bus = await get_bus()
    tracker = ConversationListTracker(MessageStore.from_database(db, bus), bus, Viewer.from_user(user))
    session = ChatListSession(websocket, tracker)
    await session.connect()
    try:
        # the client only listens; anything it sends is ignored
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()
