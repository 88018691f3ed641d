"""
Gemchat Session Adapter
=======================

In-memory chat session record plus the storage collaborator it is flushed to.

Key Responsibilities:
1. Hold the ChatSession the orchestrator mutates during a turn
2. Notify listeners (UI, persistence) after every mutation
3. Flush session records to a key-value store, debounced

Design Principle: the turn engine never persists anything itself. It only
mutates the session record; DebouncedSessionPersister observes the record
and writes it to whichever KeyValueStore the application supplies.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from gemchat.core.types import (
    Attachment,
    ChatMessage,
    MessageRole,
    ToolConfig,
    TurnState,
)

logger = logging.getLogger(__name__)


# =============================================================================
# STORAGE COLLABORATOR
# =============================================================================

class KeyValueStore:
    """Interface of the storage collaborator: load and save by key."""

    def load(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def save(self, key: str, value: Any) -> None:
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    """Dictionary-backed store, used by tests and short-lived sessions."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def load(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def save(self, key: str, value: Any) -> None:
        self._data[key] = value

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileStore(KeyValueStore):
    """One JSON file per key under a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.directory / f"{safe}.json"

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as file:
                return json.load(file)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"❌ Failed to load {key} from {path}: {e}")
            return None

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as file:
            json.dump(value, file, ensure_ascii=False)
        tmp.replace(path)


# =============================================================================
# SESSION RECORD
# =============================================================================

@dataclass
class ChatSession:
    """A conversation and its session-level settings."""
    model: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = "New Chat"
    messages: List[ChatMessage] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    system_prompt: Optional[str] = None
    tool_config: ToolConfig = ToolConfig()
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "created_at": self.created_at,
            "system_prompt": self.system_prompt,
            "tool_config": {
                name: getattr(self.tool_config, name)
                for name in ("google_search", "url_context", "optimize_formatting", "think_deeper")
            },
            "suggestions": list(self.suggestions),
            "messages": [_message_to_dict(m) for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        return cls(
            id=data["id"],
            title=data.get("title", "New Chat"),
            model=data["model"],
            created_at=data.get("created_at", time.time()),
            system_prompt=data.get("system_prompt"),
            tool_config=ToolConfig(**data.get("tool_config", {})),
            suggestions=list(data.get("suggestions", [])),
            messages=[_message_from_dict(m) for m in data.get("messages", [])],
        )


def _message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role.value,
        "content": message.content,
        "timestamp": message.timestamp,
        # attachment bytes live in their own store; only references are kept
        "attachments": [
            {"id": a.id, "name": a.name, "mime_type": a.mime_type} for a in message.attachments
        ],
        "grounding_metadata": message.grounding_metadata,
        "thoughts": message.thoughts,
        "thinking_time": message.thinking_time,
        "outcome": message.outcome,
    }


def _message_from_dict(data: Dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        id=data["id"],
        role=MessageRole(data["role"]),
        content=data.get("content", ""),
        timestamp=data.get("timestamp", time.time()),
        attachments=[Attachment(**a) for a in data.get("attachments", [])],
        grounding_metadata=data.get("grounding_metadata"),
        thoughts=data.get("thoughts"),
        thinking_time=data.get("thinking_time"),
        outcome=data.get("outcome"),
    )


def session_key(session_id: str) -> str:
    return f"gemchat.session.{session_id}"


# =============================================================================
# SESSION ADAPTER
# =============================================================================

class SessionAdapter:
    """
    Mutation interface over one ChatSession.

    USAGE:
        adapter = SessionAdapter(ChatSession(model="gemini-2.5-flash"))
        adapter.add_listener(lambda session: redraw(session))

        adapter.append_message(placeholder)
        adapter.apply_turn_state(state)
    """

    def __init__(self, session: ChatSession):
        self.session = session
        self._listeners: List[Callable[[ChatSession], None]] = []

    def add_listener(self, listener: Callable[[ChatSession], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.session)
            except Exception:
                logger.exception("Session listener failed")

    # =========================================================================
    # MESSAGE OPERATIONS
    # =========================================================================

    def find_message(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.session.messages:
            if message.id == message_id:
                return message
        return None

    def append_message(self, message: ChatMessage) -> None:
        self.session.messages.append(message)
        self._changed()

    def apply_turn_state(self, state: TurnState) -> None:
        """Replace the content fields of the turn's model message."""
        message = self.find_message(state.message_id)
        if message is None:
            logger.warning(f"Turn message {state.message_id} not in session {self.session.id}")
            return

        message.content = state.display_content
        message.thoughts = state.reasoning_text or None
        message.thinking_time = state.time_to_first_token
        message.grounding_metadata = state.grounding
        message.outcome = state.outcome.value if state.outcome else None
        self._changed()

    def truncate_from(self, index: int) -> List[ChatMessage]:
        """Drop messages from `index` on. Returns the remaining history."""
        self.session.messages = self.session.messages[:index]
        self.session.suggestions = []
        self._changed()
        return list(self.session.messages)

    def set_suggestions(self, suggestions: List[str]) -> None:
        self.session.suggestions = list(suggestions)
        self._changed()

    def clear_suggestions(self) -> None:
        if self.session.suggestions:
            self.set_suggestions([])

    def set_title(self, title: str) -> None:
        self.session.title = title
        self._changed()

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.session.messages if m.role == MessageRole.USER)


# =============================================================================
# DEBOUNCED PERSISTENCE
# =============================================================================

class DebouncedSessionPersister:
    """
    Writes session records to a KeyValueStore at most once per quiet period.

    Every change restarts the timer; the record is saved `delay` seconds
    after the last change, or immediately on flush().
    """

    def __init__(self, store: KeyValueStore, delay: float = 1.0):
        self.store = store
        self.delay = delay
        self._dirty: Dict[str, ChatSession] = {}
        self._handle: Optional[asyncio.TimerHandle] = None
        self.saves = 0

    def attach(self, adapter: SessionAdapter) -> Callable[[], None]:
        return adapter.add_listener(self.mark_dirty)

    def mark_dirty(self, session: ChatSession) -> None:
        self._dirty[session.id] = session
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to debounce on, write through
            self.flush()
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self.flush)

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        dirty, self._dirty = self._dirty, {}
        for session_id, session in dirty.items():
            try:
                self.store.save(session_key(session_id), session.to_dict())
                self.saves += 1
            except Exception:
                logger.exception(f"❌ Failed to persist session {session_id}")

    def load(self, session_id: str) -> Optional[ChatSession]:
        data = self.store.load(session_key(session_id))
        return ChatSession.from_dict(data) if data else None


# =============================================================================
# FACTORIES
# =============================================================================

def create_chat_session(settings: Any = None, **kwargs: Any) -> SessionAdapter:
    """
    Start a new chat session on the configured default model.

    Args:
        settings: gemchat.config.Settings (module default when None)
        **kwargs: Extra ChatSession fields (title, system_prompt, tool_config)

    Returns:
        SessionAdapter over the new session
    """
    if settings is None:
        from gemchat.config import settings as default_settings
        settings = default_settings

    kwargs.setdefault("model", settings.default_model)
    session = ChatSession(**kwargs)
    logger.info(f"🆕 New chat session {session.id[:8]} on {session.model}")
    return SessionAdapter(session)


def create_session_persister(store: KeyValueStore, settings: Any = None) -> DebouncedSessionPersister:
    """Build a persister whose quiet period comes from settings.persist_debounce."""
    if settings is None:
        from gemchat.config import settings as default_settings
        settings = default_settings

    return DebouncedSessionPersister(store, delay=settings.persist_debounce)
