"""Conversation persistence helpers."""

from .conversation_store import ConversationStore, InMemoryConversationStore

__all__ = ["ConversationStore", "InMemoryConversationStore"]
