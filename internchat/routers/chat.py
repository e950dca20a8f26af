import asyncio
import json
import logging
from typing import Any, Coroutine, Dict, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from internchat.controllers.conversation_controller import ConversationController
from internchat.schemas.messaging import Attachment
from internchat.schemas.views import ConversationView
from internchat.services.chat_service import ChatService
from internchat.utils.dependencies import get_chat_service, resolve_viewer


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


def _log_intent_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Intent %s failed", task.get_name(), exc_info=exc)


async def _send_views(websocket: WebSocket, outgoing: "asyncio.Queue[ConversationView]") -> None:
    while True:
        view = await outgoing.get()
        await websocket.send_json({"type": "view", "view": view.model_dump(mode="json")})


@router.websocket("/ws")
async def messages_socket(websocket: WebSocket, service: ChatService = Depends(get_chat_service)):
    # Identity arrives pre-verified: ?user_id=...&role=student|company
    viewer = resolve_viewer(websocket.query_params.get("user_id"), websocket.query_params.get("role"))
    if viewer is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    controller = ConversationController(service)
    outgoing: "asyncio.Queue[ConversationView]" = asyncio.Queue()
    controller.add_listener(outgoing.put_nowait)
    sender = asyncio.create_task(_send_views(websocket, outgoing))
    running: Set[asyncio.Task] = set()

    def spawn(coro: Coroutine[Any, Any, Any]) -> None:
        # intents run concurrently so a slow fetch never blocks the next selection
        task = asyncio.create_task(coro)
        running.add(task)
        task.add_done_callback(running.discard)
        task.add_done_callback(_log_intent_failure)

    spawn(controller.mount(viewer))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame: Dict[str, Any] = json.loads(raw)
                intent = frame.get("type")
                if intent == "select":
                    spawn(controller.select_conversation(frame.get("conversation_id")))
                elif intent == "send":
                    attachment = Attachment(**frame["attachment"]) if frame.get("attachment") else None
                    spawn(controller.send_message(frame.get("content") or "", attachment))
                elif intent == "retry":
                    spawn(controller.retry_message(frame["temp_id"]))
                elif intent == "discard":
                    controller.discard_message(frame["temp_id"])
                elif intent == "reconnect":
                    spawn(controller.reconnect())
                elif intent == "refresh":
                    spawn(controller.refresh_conversations())
                else:
                    await websocket.send_json({"type": "error", "detail": f"Unknown intent {intent!r}"})
            except (ValueError, KeyError, TypeError, AttributeError, ValidationError) as exc:
                await websocket.send_json({"type": "error", "detail": f"Invalid frame: {exc}"})
    except WebSocketDisconnect:
        logger.debug("Messages socket closed for %s", viewer.user_id)
    finally:
        controller.unmount()
        for task in list(running):
            task.cancel()
        sender.cancel()
