# conversation.py
"""
Client-side conversation state.

Messages are mutated only through the transitions below. Every transition is
safe to replay: duplicate or out-of-order ledger events are no-ops rather
than errors, so the sync engine can rebuild state from the ledger at will.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional

from crypto_utils import normalize_address, same_address
from models import Message, MessageStatus, Reaction

EDIT = "edit"
DELETE = "delete"


class ConversationState:
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._by_id: Dict[str, Message] = {}

    @property
    def messages(self) -> List[Message]:
        """Messages in ledger insertion order."""
        return sorted(self._by_id.values(), key=lambda m: m.index)

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def at_index(self, message_index: int) -> Optional[Message]:
        for m in self._by_id.values():
            if m.index == message_index:
                return m
        return None

    def add_message(self, message: Message) -> Message:
        """Insert a message in its initial state. A replayed id keeps the existing entry."""
        existing = self._by_id.get(message.id)
        if existing is not None:
            return existing
        self._by_id[message.id] = message
        return message

    def apply_status(self, message_id: str, status: MessageStatus, user: str) -> bool:
        """Advance delivery status. Only the recipient's acknowledgment counts.

        Returns True if the status changed.
        """
        msg = self._by_id.get(message_id)
        if msg is None:
            return False
        if not same_address(user, msg.recipient):
            return False
        status = MessageStatus(status)
        if status <= msg.status:
            return False
        msg.status = status
        return True

    def add_reaction(self, message_index: int, emoji: str, user: str) -> bool:
        msg = self.at_index(message_index)
        if msg is None:
            return False
        user = normalize_address(user)
        for r in msg.reactions:
            if r.emoji == emoji and r.user == user:
                return False
        msg.reactions.append(Reaction(emoji=emoji, user=user))
        return True

    def remove_reaction(self, message_index: int, emoji: str, user: str) -> bool:
        msg = self.at_index(message_index)
        if msg is None:
            return False
        user = normalize_address(user)
        before = len(msg.reactions)
        msg.reactions = [r for r in msg.reactions if not (r.emoji == emoji and r.user == user)]
        return len(msg.reactions) != before

    def reaction_counts(self, message_index: int) -> Dict[str, int]:
        msg = self.at_index(message_index)
        if msg is None:
            return {}
        return dict(Counter(r.emoji for r in msg.reactions))

    def apply_supersede(self, message_id: str, action: str, user: str, content: Optional[str] = None) -> bool:
        """Apply an edit/delete marker. The original ciphertext is kept for audit.

        Only the original sender may supersede; a delete is final.
        """
        msg = self._by_id.get(message_id)
        if msg is None or msg.deleted:
            return False
        if not same_address(user, msg.sender):
            return False
        if action == DELETE:
            msg.deleted = True
            msg.content = None
            return True
        if action == EDIT:
            msg.edited = True
            msg.content = content
            msg.undecryptable = content is None
            return True
        return False


class Conversations:
    """All conversation states of one client, keyed by conversation id."""

    def __init__(self) -> None:
        self._states: Dict[str, ConversationState] = {}

    def state(self, conversation_id: str) -> ConversationState:
        st = self._states.get(conversation_id)
        if st is None:
            st = ConversationState(conversation_id)
            self._states[conversation_id] = st
        return st

    def replace(self, state: ConversationState) -> None:
        self._states[state.conversation_id] = state

    def messages(self, conversation_id: str) -> List[Message]:
        return self.state(conversation_id).messages

    def add_reaction(self, conversation_id: str, message_index: int, emoji: str, user: str) -> bool:
        return self.state(conversation_id).add_reaction(message_index, emoji, user)

    def apply_status(self, conversation_id: str, message_id: str, status: MessageStatus, user: str) -> bool:
        return self.state(conversation_id).apply_status(message_id, status, user)
