"""
Amora — Chats API

REST reads/writes for threads and messages, plus two WebSocket streams:

  * ``/chats/ws``              live thread list of the caller
  * ``/chats/{thread_id}/ws``  live message list of one thread; the client
                               may also send ``{"text": "..."}`` frames

WebSocket clients authenticate with ``?token=<Firebase ID token>`` because
browsers cannot set headers on the upgrade request.  Each stream holds one
store subscription that is released when the socket closes.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from app.api.deps import (
    CurrentSession,
    FirebaseTokenVerifier,
    get_chat_service,
    get_swipe_engine,
    get_token_verifier,
)
from app.exceptions import AppException, ForbiddenError
from app.models.chat import Message
from app.schemas.chat import SendMessageRequest, SendMessageResponse, ThreadCreated, ThreadListResponse
from app.services.chat_service import ChatThreadService, partition_threads
from app.services.swipe_service import SwipeEngine
from app.store import Subscription

logger = structlog.get_logger("amora.api.chats")

router = APIRouter()


def _dump(items: list) -> list[dict]:
    return [item.model_dump(mode="json", by_alias=True) for item in items]


# ──────────────────────────────────────────────────────────────────────────────
# REST
# ──────────────────────────────────────────────────────────────────────────────

@router.get("", response_model=ThreadListResponse, summary="My conversations")
async def list_threads(
    session: CurrentSession,
    chats: ChatThreadService = Depends(get_chat_service),
) -> ThreadListResponse:
    threads = await chats.list_threads(session.uid)
    new_matches, conversations = partition_threads(threads)
    return ThreadListResponse(new_matches=new_matches, conversations=conversations)


@router.post("/{peer_uid}", response_model=ThreadCreated, summary="Open the thread with a match")
async def open_thread(
    peer_uid: str,
    session: CurrentSession,
    chats: ChatThreadService = Depends(get_chat_service),
    swipes: SwipeEngine = Depends(get_swipe_engine),
) -> ThreadCreated:
    """Idempotently create the 1:1 thread; only matched pairs may chat."""
    if not await swipes.is_match(session.uid, peer_uid):
        raise ForbiddenError("Chats are only available between matched users")
    thread_id = await chats.ensure_thread(session.uid, peer_uid)
    return ThreadCreated(thread_id=thread_id)


@router.get("/{thread_id}/messages", response_model=list[Message], summary="Latest messages")
async def list_messages(
    thread_id: str,
    session: CurrentSession,
    limit: Optional[int] = Query(None, ge=1, le=200),
    chats: ChatThreadService = Depends(get_chat_service),
) -> list[Message]:
    await chats.require_participant(thread_id, session.uid)
    return await chats.list_messages(thread_id, limit)


@router.post("/{thread_id}/messages", response_model=SendMessageResponse, summary="Send a message")
async def send_message(
    thread_id: str,
    payload: SendMessageRequest,
    session: CurrentSession,
    chats: ChatThreadService = Depends(get_chat_service),
) -> SendMessageResponse:
    await chats.require_participant(thread_id, session.uid)
    message_id = await chats.send_message(thread_id, session.uid, payload.text)
    return SendMessageResponse(message_id=message_id, sent=message_id is not None)


# ──────────────────────────────────────────────────────────────────────────────
# WebSocket streams
# ──────────────────────────────────────────────────────────────────────────────

async def _authenticate(websocket: WebSocket, token: str, verifier: FirebaseTokenVerifier):
    try:
        return await verifier.verify(token)
    except AppException as exc:
        logger.info("ws_auth_rejected", path=websocket.url.path, error=exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return None


async def _stream(
    websocket: WebSocket,
    subscription: Subscription,
    event: str,
    render: Callable[[Any], list[dict]],
    on_frame: Optional[Callable[[dict], Any]] = None,
) -> None:
    """Forward every snapshot until either side goes away."""

    async def _receive() -> None:
        try:
            while True:
                frame = await websocket.receive_json()
                if on_frame is not None:
                    await on_frame(frame)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning("ws_receive_failed", path=websocket.url.path, error=str(exc))
        finally:
            subscription.unsubscribe()

    receiver = asyncio.create_task(_receive())
    try:
        async for item in subscription:
            await websocket.send_json({"type": event, "data": render(item)})
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        receiver.cancel()
        logger.info("ws_stream_closed", path=websocket.url.path, stream=event)


@router.websocket("/ws")
async def threads_stream(
    websocket: WebSocket,
    token: str = Query(""),
    verifier: FirebaseTokenVerifier = Depends(get_token_verifier),
    chats: ChatThreadService = Depends(get_chat_service),
) -> None:
    session = await _authenticate(websocket, token, verifier)
    if session is None:
        return
    await websocket.accept()
    logger.info("ws_threads_open", uid=session.uid)
    await _stream(websocket, chats.subscribe_threads(session.uid), "threads", _dump)


@router.websocket("/{thread_id}/ws")
async def messages_stream(
    websocket: WebSocket,
    thread_id: str,
    token: str = Query(""),
    limit: Optional[int] = Query(None, ge=1, le=200),
    verifier: FirebaseTokenVerifier = Depends(get_token_verifier),
    chats: ChatThreadService = Depends(get_chat_service),
) -> None:
    session = await _authenticate(websocket, token, verifier)
    if session is None:
        return
    try:
        await chats.require_participant(thread_id, session.uid)
    except AppException as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return
    await websocket.accept()
    logger.info("ws_messages_open", uid=session.uid, thread_id=thread_id)

    async def _on_frame(frame: dict) -> None:
        text = frame.get("text") if isinstance(frame, dict) else None
        if isinstance(text, str):
            await chats.send_message(thread_id, session.uid, text)

    await _stream(
        websocket,
        chats.subscribe_messages(thread_id, limit),
        "messages",
        _dump,
        on_frame=_on_frame,
    )
