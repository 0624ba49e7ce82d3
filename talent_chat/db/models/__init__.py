from .conversation import Conversation
from .message import Message
from .profile import Profile

__all__ = ["Conversation", "Message", "Profile"]
