from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from talent_chat.model.chat.message import as_utc


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    participant_a: str
    participant_b: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalize(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    def involves(self, user_id: str) -> bool:
        return user_id in (self.participant_a, self.participant_b)

    def other(self, user_id: str) -> str:
        return self.participant_b if self.participant_a == user_id else self.participant_a


class Profile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.id


class ConversationSummary(BaseModel):
    conversation_id: str
    other_user_id: str
    other_user_name: str
    other_user_avatar: Optional[str] = None
    last_message_content: Optional[str] = None
    last_message_time: Optional[datetime] = None
    unread_count: int = 0
