from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

MESSAGES_TABLE = "messages"


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class FeedStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    LOST = "lost"
    RECONNECTED = "reconnected"
    # reconnect kept failing; still retrying in the background
    DEGRADED = "degraded"
    CLOSED = "closed"


class ChangeEvent(BaseModel):
    """Row change notification delivered by the push feed."""

    table: str
    type: EventType
    record: Dict[str, Any] = Field(default_factory=dict)

    def matches(self, table: str, row_filter: Optional[Dict[str, Any]] = None) -> bool:
        if self.table != table:
            return False
        for column, value in (row_filter or {}).items():
            if str(self.record.get(column)) != str(value):
                return False
        return True
