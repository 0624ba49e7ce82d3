import logging

from talent_chat.client.contracts import ChatStore
from talent_chat.service.chat.errors import DuplicateConversation, InvalidParticipant

logger = logging.getLogger(__name__)

MAX_PARTICIPANT_ID_LEN = 64


def _validate(party: str) -> str:
    if not isinstance(party, str) or not party.strip():
        raise InvalidParticipant("participant id must be a non-empty string")
    if len(party) > MAX_PARTICIPANT_ID_LEN or party != party.strip():
        raise InvalidParticipant(f"malformed participant id: {party!r}")
    return party


class ConversationDirectory:
    def __init__(self, store: ChatStore):
        self._store = store

    async def resolve_conversation(self, party_a: str, party_b: str) -> str:
        """Returns the single conversation id for the unordered pair, creating it if needed."""
        _validate(party_a)
        _validate(party_b)
        if party_a == party_b:
            raise InvalidParticipant("cannot start a conversation with yourself")

        existing = await self._store.find_conversation(party_a, party_b)
        if existing is not None:
            return existing.id

        try:
            created = await self._store.create_conversation(party_a, party_b)
        except DuplicateConversation:
            # Lost the race against a concurrent create for the same pair
            logger.info("conversation created concurrently pair=%s/%s", party_a, party_b)
            existing = await self._store.find_conversation(party_a, party_b)
            if existing is None:
                raise
            return existing.id
        logger.info("conversation created id=%s", created.id)
        return created.id
