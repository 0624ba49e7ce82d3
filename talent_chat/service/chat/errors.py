class ChatError(Exception):
    """Base class for messaging failures."""


class InvalidParticipant(ChatError, ValueError):
    pass


class DuplicateConversation(ChatError):
    """The store already holds a conversation for this participant pair."""


class FetchFailed(ChatError):
    pass


class SendFailed(ChatError):
    pass


class UploadFailed(SendFailed):
    pass


class SubscriptionLost(ChatError):
    pass


class MergerStateError(ChatError, RuntimeError):
    pass
