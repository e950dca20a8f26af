import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from internchat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from internchat.errors import ErrorKind, RepositoryError
from internchat.repositories.conversation_repository import ConversationRepository
from internchat.repositories.message_repository import MessageRepository
from internchat.routers.chat import router as chat_router
from internchat.routers.conversations import router as conversations_router
from internchat.services.chat_service import ChatService
from internchat.utils.realtime_bus import close_bus, get_bus


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_AUTHORIZED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NETWORK: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    service = ChatService(MessageRepository(db), ConversationRepository(db), await get_bus())
    await service.ensure_indexes()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="internchat messaging", lifespan=lifespan)


@app.exception_handler(RepositoryError)
async def repository_error_handler(request: Request, exc: RepositoryError):
    if exc.kind is ErrorKind.NETWORK:
        logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=_STATUS_BY_KIND[exc.kind], content={"kind": exc.kind.value, "detail": exc.message})


app.include_router(chat_router)
app.include_router(conversations_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}
