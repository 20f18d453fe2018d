"""Chat session and message persistence."""

from .store import MAX_LISTED_MESSAGES, ConversationStore

__all__ = ["ConversationStore", "MAX_LISTED_MESSAGES"]
