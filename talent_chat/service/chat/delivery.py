from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import talent_chat.config.config as configs
from talent_chat.client.contracts import BlobStore, ChatStore
from talent_chat.model.chat.message import MediaUpload, Message, NewMessage
from talent_chat.service.chat.errors import SendFailed, UploadFailed

logger = logging.getLogger(__name__)


def media_path(conversation_id: str, sender_id: str) -> str:
    return f"{conversation_id}/{int(time.time() * 1000)}_{sender_id}"


async def deliver_message(
    store: ChatStore,
    blobs: Optional[BlobStore],
    conversation_id: str,
    sender_id: str,
    content: Optional[str] = None,
    media: Optional[MediaUpload] = None,
    upload_timeout: float = configs.UPLOAD_TIMEOUT_SEC,
    insert_timeout: float = configs.INSERT_TIMEOUT_SEC,
) -> Message:
    """Writes one message durably: media upload first, then the row insert.

    The insert is never attempted when the upload fails, so no row points at
    a missing blob.
    """
    media_url = None
    if media is not None:
        if blobs is None:
            raise UploadFailed("no blob store configured for media messages")
        path = media_path(conversation_id, sender_id)
        try:
            media_url = await asyncio.wait_for(
                blobs.upload(path, media.data, media.content_type),
                timeout=upload_timeout,
            )
        except UploadFailed:
            raise
        except Exception as exc:
            logger.exception("media upload failed conversation=%s", conversation_id)
            raise UploadFailed(f"upload failed for {path}") from exc

    draft = NewMessage(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content or None,
        media_url=media_url,
        media_type=media.media_type if media is not None else None,
    )
    try:
        return await asyncio.wait_for(store.insert_message(draft), timeout=insert_timeout)
    except Exception as exc:
        logger.exception("message insert failed conversation=%s", conversation_id)
        raise SendFailed(f"insert failed for conversation {conversation_id}") from exc
