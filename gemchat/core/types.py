"""
Gemchat Core Types
==================

Shared dataclasses and enums used across the turn engine.

Types:
- ChatMessage / Attachment: one entry of the conversation history
- ToolConfig: per-turn and per-session feature toggles
- TurnRequest: immutable input of one turn
- Fragment: one incremental piece of a streamed response
- TurnState: mutable state owned by the orchestrator while a turn runs
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, List, Optional, Tuple


# =============================================================================
# CONVERSATION RECORDS
# =============================================================================

class MessageRole(Enum):
    """Author of a chat message, named the way the remote service names it."""
    USER = "user"
    MODEL = "model"


@dataclass
class Attachment:
    """
    A binary attachment sent alongside a message.

    Attributes:
        name: Original file name
        mime_type: MIME type reported for the file
        data: Base64-encoded payload (None when it was never loaded)
        id: Storage identifier of the attachment
    """
    name: str
    mime_type: str
    data: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return isinstance(self.data, str) and bool(self.data)


@dataclass
class ChatMessage:
    """One message of a chat session."""
    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)
    attachments: List[Attachment] = field(default_factory=list)
    grounding_metadata: Optional[Any] = None
    thoughts: Optional[str] = None
    thinking_time: Optional[float] = None
    outcome: Optional[str] = None

    def text_only(self) -> "ChatMessage":
        """Copy of this message without attachments."""
        return replace(self, attachments=[])


@dataclass(frozen=True)
class ToolConfig:
    """
    Feature toggles for one turn.

    Turn-level values of None inherit the session-level value
    (see merged_over).
    """
    google_search: Optional[bool] = None
    url_context: Optional[bool] = None
    optimize_formatting: Optional[bool] = None
    think_deeper: Optional[bool] = None

    def merged_over(self, session_level: "ToolConfig") -> "ToolConfig":
        """Return the effective config: explicit turn flags win over session flags."""
        return ToolConfig(
            google_search=_pick(self.google_search, session_level.google_search),
            url_context=_pick(self.url_context, session_level.url_context),
            optimize_formatting=_pick(self.optimize_formatting, session_level.optimize_formatting),
            think_deeper=_pick(self.think_deeper, session_level.think_deeper),
        )

    def enabled(self, name: str) -> bool:
        return bool(getattr(self, name))


def _pick(turn_value: Optional[bool], session_value: Optional[bool]) -> Optional[bool]:
    return session_value if turn_value is None else turn_value


# =============================================================================
# TURN INPUT
# =============================================================================

@dataclass(frozen=True)
class GenerationSettings:
    """Model-side generation parameters."""
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class TurnRequest:
    """
    Everything one turn needs. Immutable once submitted.

    Attributes:
        history: Prior messages, oldest first (excludes the new content)
        new_content: Text of the new user message
        attachments: Attachments of the new user message
        model: Model identifier
        tool_config: Turn-level tool toggles
        reveal_reasoning: Whether reasoning fragments are kept
        generation: Temperature / token / system prompt settings
    """
    history: Tuple[ChatMessage, ...]
    new_content: str
    model: str
    attachments: Tuple[Attachment, ...] = ()
    tool_config: ToolConfig = ToolConfig()
    reveal_reasoning: bool = False
    generation: GenerationSettings = GenerationSettings()


# =============================================================================
# STREAM FRAGMENTS
# =============================================================================

class FragmentKind(Enum):
    REASONING = "reasoning"
    TEXT = "text"
    GROUNDING = "grounding"
    FINISH = "finish"


class FinishReason(Enum):
    """
    Terminal signal of a stream.

    STOP: normal end
    SAFETY: provider cut the response for safety
    MAX_TOKENS: provider cut the response for length
    OTHER: any other provider reason, treated like a normal end
    """
    STOP = "STOP"
    SAFETY = "SAFETY"
    MAX_TOKENS = "MAX_TOKENS"
    OTHER = "OTHER"


@dataclass(frozen=True)
class Fragment:
    """One ordered unit of a streamed response. Never retracted."""
    kind: FragmentKind
    text: str = ""
    grounding: Optional[Any] = None
    finish_reason: Optional[FinishReason] = None

    @classmethod
    def reasoning(cls, text: str) -> "Fragment":
        return cls(FragmentKind.REASONING, text=text)

    @classmethod
    def visible(cls, text: str) -> "Fragment":
        return cls(FragmentKind.TEXT, text=text)

    @classmethod
    def citations(cls, payload: Any) -> "Fragment":
        return cls(FragmentKind.GROUNDING, grounding=payload)

    @classmethod
    def finish(cls, reason: FinishReason) -> "Fragment":
        return cls(FragmentKind.FINISH, finish_reason=reason)


# =============================================================================
# TURN STATE
# =============================================================================

class TurnStatus(Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnStatus.COMPLETED, TurnStatus.CANCELLED, TurnStatus.ERRORED)


class TurnOutcome(Enum):
    """Terminal classification of a turn."""
    SUCCESS = "success"
    CANCELLED = "cancelled"
    NO_CREDENTIALS = "no_credentials"
    SAFETY = "safety"
    MAX_TOKENS = "max_tokens"
    SILENT_EMPTY = "silent_empty"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"

    @property
    def is_error(self) -> bool:
        return self not in (TurnOutcome.SUCCESS, TurnOutcome.CANCELLED)


PLACEHOLDER_CONTENT = "..."


@dataclass
class TurnState:
    """
    State of the model message being produced by one turn.

    Mutated only by the orchestrator; observers receive snapshots.
    """
    message_id: str
    status: TurnStatus = TurnStatus.IDLE
    visible_text: str = ""
    reasoning_text: str = ""
    time_to_first_token: Optional[float] = None
    grounding: Optional[Any] = None
    outcome: Optional[TurnOutcome] = None
    error_message: Optional[str] = None

    @property
    def display_content(self) -> str:
        """What the rendering collaborator should show for this message."""
        if self.status == TurnStatus.ERRORED and self.error_message:
            return self.error_message
        return self.visible_text or PLACEHOLDER_CONTENT

    def snapshot(self) -> "TurnState":
        return replace(self)
