from typing import Optional

from pydantic import BaseModel, Field

from talent_chat.model.chat.message import MediaType


class ResolveConversationRequest(BaseModel):
    participant_id: str = Field(..., description="The other party of the conversation")


class MediaPayload(BaseModel):
    data_base64: str = Field(..., description="Base64 encoded media bytes")
    media_type: MediaType = MediaType.IMAGE
    content_type: str = "image/jpeg"


class SendMessageRequest(BaseModel):
    content: Optional[str] = Field(default=None, max_length=500, description="Message text")
    media: Optional[MediaPayload] = None
