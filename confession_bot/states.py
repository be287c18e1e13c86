"""Per-user conversation state.

A user has at most one pending state, stored in ``user_states/<user_id>``. It
says what the next free-text message from that user means. The state is a
tagged union: one frozen dataclass per tag.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .storage import DocumentStore

logger = logging.getLogger(__name__)

USER_STATES = "user_states"


@dataclass(frozen=True)
class AwaitingUsername:
    tag = "awaiting_username"

    def to_doc(self) -> Dict[str, Any]:
        return {"state": self.tag}


@dataclass(frozen=True)
class AwaitingConfession:
    tag = "awaiting_confession"

    def to_doc(self) -> Dict[str, Any]:
        return {"state": self.tag}


@dataclass(frozen=True)
class AwaitingComment:
    confession_id: str
    tag = "awaiting_comment"

    def to_doc(self) -> Dict[str, Any]:
        return {"state": self.tag, "confession_id": self.confession_id}


@dataclass(frozen=True)
class AwaitingRejectionReason:
    confession_id: str
    tag = "awaiting_rejection_reason"

    def to_doc(self) -> Dict[str, Any]:
        return {"state": self.tag, "confession_id": self.confession_id}


ConversationState = Union[AwaitingUsername, AwaitingConfession, AwaitingComment, AwaitingRejectionReason]


def state_from_doc(doc: Optional[Dict[str, Any]]) -> Optional[ConversationState]:
    if not doc:
        return None
    tag = doc.get("state")
    if tag == AwaitingUsername.tag:
        return AwaitingUsername()
    if tag == AwaitingConfession.tag:
        return AwaitingConfession()
    if tag == AwaitingComment.tag:
        return AwaitingComment(doc["confession_id"])
    if tag == AwaitingRejectionReason.tag:
        return AwaitingRejectionReason(doc["confession_id"])
    raise ValueError(f"Unknown conversation state: {tag!r}")


class StateStore:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, user_id: int) -> Optional[ConversationState]:
        doc = await self.store.get(USER_STATES, str(user_id))
        try:
            return state_from_doc(doc)
        except (ValueError, KeyError) as e:
            logger.warning(f"Dropping unreadable state for user {user_id}: {e}")
            await self.clear(user_id)
            return None

    async def set(self, user_id: int, state: ConversationState) -> None:
        await self.store.set(USER_STATES, str(user_id), state.to_doc())

    async def clear(self, user_id: int) -> None:
        await self.store.delete(USER_STATES, str(user_id))
