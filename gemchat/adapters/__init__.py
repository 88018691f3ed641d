"""
Gemchat Adapter Layer
=====================

This package contains adapters that wrap external services,
providing clean interfaces for the TurnOrchestrator.

Adapters:
- GeminiAdapter: Wraps Google Gemini SDK calls
- payload_builder: Converts turn requests into SDK contents and config
- SessionAdapter: Chat session record and its persistence

Design Principle: Adapters isolate external dependencies,
making the core engine testable with mocks.
"""

from .gemini_adapter import GeminiAdapter, GeminiConfig
from .session_adapter import (
    ChatSession,
    DebouncedSessionPersister,
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    SessionAdapter,
    create_chat_session,
    create_session_persister,
)

__all__ = [
    "GeminiAdapter",
    "GeminiConfig",
    "ChatSession",
    "DebouncedSessionPersister",
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
    "SessionAdapter",
    "create_chat_session",
    "create_session_persister",
]
