import asyncio
import base64
import binascii
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

import talent_chat.config.config as configs
from talent_chat.client.db.store import SqlChatStore
from talent_chat.client.realtime.feed import RedisFeed
from talent_chat.client.storage.blob import HttpBlobStore
from talent_chat.model.chat.chat_request import ResolveConversationRequest, SendMessageRequest
from talent_chat.model.chat.chat_response import MarkReadResponse, ResolveConversationResponse
from talent_chat.model.chat.conversation import ConversationSummary
from talent_chat.model.chat.message import MediaUpload, Message
from talent_chat.service.chat.aggregator import list_conversations
from talent_chat.service.chat.delivery import deliver_message
from talent_chat.service.chat.directory import ConversationDirectory
from talent_chat.service.chat.errors import FetchFailed, InvalidParticipant, SendFailed, UploadFailed

logger = logging.getLogger(__name__)

api_router = APIRouter()

_feed: Optional[RedisFeed] = None
_blobs: Optional[HttpBlobStore] = None


def get_feed() -> RedisFeed:
    global _feed
    if _feed is None:
        _feed = RedisFeed()
    return _feed


def get_store(feed: RedisFeed = Depends(get_feed)) -> SqlChatStore:
    return SqlChatStore(feed=feed)


def get_blob_store() -> HttpBlobStore:
    global _blobs
    if _blobs is None:
        _blobs = HttpBlobStore()
    return _blobs


def get_viewer_id(x_user_id: str = Header(default="")) -> str:
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="missing viewer identity")
    return x_user_id.strip()


async def close_clients() -> None:
    global _feed, _blobs
    if _feed is not None:
        await _feed.aclose()
        _feed = None
    if _blobs is not None:
        await _blobs.aclose()
        _blobs = None


async def _read_store(call, conversation_id: str):
    try:
        return await asyncio.wait_for(call, timeout=configs.FETCH_TIMEOUT_SEC)
    except Exception:
        logger.exception("store call failed conversation=%s", conversation_id)
        raise HTTPException(status_code=503, detail="conversation store unavailable")


async def _require_participant(store: SqlChatStore, conversation_id: str, viewer_id: str) -> None:
    conversation = await _read_store(store.get_conversation(conversation_id), conversation_id)
    if conversation is None or not conversation.involves(viewer_id):
        raise HTTPException(status_code=404, detail="conversation not found")


@api_router.post("/conversations", response_model=ResolveConversationResponse)
async def resolve_conversation(
    req: ResolveConversationRequest,
    viewer_id: str = Depends(get_viewer_id),
    store: SqlChatStore = Depends(get_store),
):
    try:
        conversation_id = await ConversationDirectory(store).resolve_conversation(viewer_id, req.participant_id)
    except InvalidParticipant as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ResolveConversationResponse(conversation_id=conversation_id)


@api_router.get("/conversations", response_model=List[ConversationSummary])
async def conversation_list(
    viewer_id: str = Depends(get_viewer_id),
    store: SqlChatStore = Depends(get_store),
):
    try:
        return await list_conversations(store, viewer_id, profiles=store)
    except FetchFailed:
        raise HTTPException(status_code=503, detail="conversation list unavailable")


@api_router.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def conversation_messages(
    conversation_id: str,
    viewer_id: str = Depends(get_viewer_id),
    store: SqlChatStore = Depends(get_store),
):
    await _require_participant(store, conversation_id, viewer_id)
    return await _read_store(store.list_messages(conversation_id), conversation_id)


@api_router.post("/conversations/{conversation_id}/messages", response_model=Message)
async def send_message(
    conversation_id: str,
    req: SendMessageRequest,
    viewer_id: str = Depends(get_viewer_id),
    store: SqlChatStore = Depends(get_store),
    blobs: HttpBlobStore = Depends(get_blob_store),
):
    content = req.content.strip() if req.content else None
    if not content and req.media is None:
        raise HTTPException(status_code=422, detail="message needs content or media")
    await _require_participant(store, conversation_id, viewer_id)

    media = None
    if req.media is not None:
        try:
            data = base64.b64decode(req.media.data_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=422, detail="media is not valid base64")
        media = MediaUpload(
            uri="inline",
            data=data,
            media_type=req.media.media_type,
            content_type=req.media.content_type,
        )

    try:
        return await deliver_message(store, blobs, conversation_id, viewer_id, content=content, media=media)
    except UploadFailed:
        raise HTTPException(status_code=502, detail="media upload failed")
    except SendFailed:
        raise HTTPException(status_code=502, detail="message could not be stored")


@api_router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    conversation_id: str,
    viewer_id: str = Depends(get_viewer_id),
    store: SqlChatStore = Depends(get_store),
):
    await _require_participant(store, conversation_id, viewer_id)
    updated = await _read_store(store.mark_read(conversation_id, viewer_id), conversation_id)
    return MarkReadResponse(updated=len(updated))
