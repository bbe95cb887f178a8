"""Conversation memory for chat sessions."""
from plugrag.memory.manager import ConversationManager

__all__ = ["ConversationManager"]
