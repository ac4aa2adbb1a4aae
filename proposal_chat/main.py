import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from proposal_chat.config import get_settings
from proposal_chat.database.connection import close_mongo_connection, connect_to_mongo
from proposal_chat.routers.attachments import router as attachments_router
from proposal_chat.routers.chat import router as chat_router
from proposal_chat.routers.conversations import router as conversations_router
from proposal_chat.services.message_store import MessageStore
from proposal_chat.utils.logger import init_app_logger
from proposal_chat.utils.realtime_bus import close_bus, get_bus

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    settings = get_settings()
    init_app_logger(settings)
    db = await connect_to_mongo()
    bus = await get_bus()
    await MessageStore.from_database(db, bus).ensure_indexes()
    logger.info("%s started", settings.app_name)
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Proposal Chat", lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(attachments_router)
app.include_router(chat_router)


@app.get("/")
async def root():

    bus = await get_bus()
    return {"message": "Proposal chat is running", "realtime": "redis" if bus.raw.enabled else "local"}
