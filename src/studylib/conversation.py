"""Conversation keys for direct messages.

A conversation between two users is identified by the sorted pair of their
ids, so ``ConversationKey.of(a, b) == ConversationKey.of(b, a)``.
"""

from __future__ import annotations

from typing import NamedTuple


class ConversationKey(NamedTuple):
    low: str
    high: str

    @classmethod
    def of(cls, user_a: str, user_b: str) -> "ConversationKey":
        """Build the canonical key for a pair of users."""
        if not user_a or not user_b:
            raise ValueError("Conversation participants must be non-empty ids")
        if user_a <= user_b:
            return cls(user_a, user_b)
        return cls(user_b, user_a)

    def includes(self, user_id: str) -> bool:
        return user_id == self.low or user_id == self.high

    def other(self, user_id: str) -> str:
        """Return the participant that is not ``user_id``."""
        if user_id == self.low:
            return self.high
        if user_id == self.high:
            return self.low
        raise ValueError(f"{user_id} is not part of this conversation")
