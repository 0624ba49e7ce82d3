from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PROVISIONAL_PREFIX = "tmp-"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Message(BaseModel):
    """A chat message as rendered by the merger.

    Durable messages carry the store-assigned id. Provisional ones carry an id
    under ``PROVISIONAL_PREFIX``, which the store never hands out.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None
    is_read: bool = False
    created_at: datetime

    @field_validator("id", "conversation_id", "sender_id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def _require_body(self) -> "Message":
        if not self.content and not self.media_url:
            raise ValueError("message needs content or media")
        if self.media_url and self.media_type is None:
            raise ValueError("media_url without media_type")
        return self

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(PROVISIONAL_PREFIX)


class NewMessage(BaseModel):
    """Row payload for a durable insert; the store assigns id and created_at."""

    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None


class MediaUpload(BaseModel):
    # uri is the local reference shown while the upload is in flight
    uri: str = Field(..., min_length=1)
    data: bytes
    media_type: MediaType = MediaType.IMAGE
    content_type: str = "image/jpeg"
