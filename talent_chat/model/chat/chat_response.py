from pydantic import BaseModel, Field


class ResolveConversationResponse(BaseModel):
    conversation_id: str = Field(..., description="Conversation shared by the viewer and the participant")


class MarkReadResponse(BaseModel):
    updated: int
