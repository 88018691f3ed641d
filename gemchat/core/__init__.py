"""
Gemchat Core Turn Engine
========================

This package contains the client-side engine that runs one Gemini chat
turn at a time.

Components:
- types: Shared dataclasses and enums
- errors: Exception types, error kinds and user-facing outcome strings
- credential_rotator: Sticky API key rotation
- endpoint_override: Scoped proxy routing for SDK clients
- executor: Request and stream executors with key failover
- watchdog: Cancellation token and stream inactivity timer
- response_buffer: Fragment accumulation into turn state
- publisher: Rate-limited state delivery to observers
- followups: Suggested replies and chat titles
- orchestrator: Main TurnOrchestrator

Design Principles:
1. Rotate keys only before output starts flowing
2. Every pull is abortable (user cancel or inactivity timeout)
3. Users see short outcome strings, logs carry the detail
"""

from .types import (
    Attachment,
    ChatMessage,
    FinishReason,
    Fragment,
    FragmentKind,
    GenerationSettings,
    MessageRole,
    ToolConfig,
    TurnOutcome,
    TurnRequest,
    TurnState,
    TurnStatus,
)
from .errors import (
    AllCredentialsFailedError,
    ConfigurationError,
    ErrorType,
    GemchatError,
    NoCredentialsError,
    StreamInterruptedError,
    classify_exception,
    outcome_message,
)
from .credential_rotator import CredentialRotator
from .endpoint_override import EndpointOverride, Transport
from .executor import execute_stream_with_rotation, execute_with_rotation
from .watchdog import CancellationToken, CancelReason, StreamWatchdog
from .response_buffer import ResponseBuffer
from .publisher import CoalescingPublisher
from .followups import generate_chat_title, generate_suggestions
from .orchestrator import TurnOrchestrator, TurnSettings, create_turn_orchestrator

__all__ = [
    # Types
    "Attachment",
    "ChatMessage",
    "FinishReason",
    "Fragment",
    "FragmentKind",
    "GenerationSettings",
    "MessageRole",
    "ToolConfig",
    "TurnOutcome",
    "TurnRequest",
    "TurnState",
    "TurnStatus",
    # Errors
    "AllCredentialsFailedError",
    "ConfigurationError",
    "ErrorType",
    "GemchatError",
    "NoCredentialsError",
    "StreamInterruptedError",
    "classify_exception",
    "outcome_message",
    # Execution
    "CredentialRotator",
    "EndpointOverride",
    "Transport",
    "execute_with_rotation",
    "execute_stream_with_rotation",
    # Turn
    "CancellationToken",
    "CancelReason",
    "StreamWatchdog",
    "ResponseBuffer",
    "CoalescingPublisher",
    "generate_chat_title",
    "generate_suggestions",
    "TurnOrchestrator",
    "TurnSettings",
    "create_turn_orchestrator",
]
