"""
Gemchat Error Taxonomy
======================

Exception types raised by the turn engine, plus the mapping from raw
transport errors to error kinds (for logs) and from turn outcomes to the
short strings shown to users.

Users never see technical detail: the orchestrator logs the exception and
publishes outcome_message(outcome) as the message content.
"""

from enum import Enum
from typing import Dict, Optional

from gemchat.core.types import TurnOutcome


# =============================================================================
# EXCEPTIONS
# =============================================================================

class GemchatError(Exception):
    """Base exception for the turn engine."""


class ConfigurationError(GemchatError):
    """Raised for invalid configuration, e.g. a malformed endpoint URL."""


class NoCredentialsError(ConfigurationError):
    """Raised when an executor is invoked with an empty credential set."""


class ExecutorError(GemchatError):
    """Base class for failures surfaced by the rotation executors."""


class AllCredentialsFailedError(ExecutorError):
    """
    Every credential failed within one executor call.

    Attributes:
        attempts: Number of credentials tried
        last_error: Underlying cause of the final attempt
    """

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All {attempts} credentials failed: {last_error!r}")


class StreamInterruptedError(ExecutorError):
    """
    The stream failed after fragments were already forwarded.

    Terminal for the call: the executor never rotates once output has
    started flowing.
    """

    def __init__(self, fragments_forwarded: int, cause: BaseException):
        self.fragments_forwarded = fragments_forwarded
        self.cause = cause
        super().__init__(
            f"Stream interrupted after {fragments_forwarded} fragments: {cause!r}"
        )


# =============================================================================
# ERROR KINDS (for logging)
# =============================================================================

class ErrorType(Enum):
    API_KEY_INVALID = "API_KEY_INVALID"
    API_KEY_PERMISSION_DENIED = "API_KEY_PERMISSION_DENIED"
    API_KEY_QUOTA_EXCEEDED = "API_KEY_QUOTA_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NETWORK_ERROR = "NETWORK_ERROR"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    NO_CREDENTIALS = "NO_CREDENTIALS"
    STREAM_INTERRUPTED = "STREAM_INTERRUPTED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


def _status_code(error: BaseException) -> Optional[int]:
    # google.genai.errors.APIError exposes `code`; httpx errors carry a response
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(error: BaseException) -> ErrorType:
    """
    Map an exception to an ErrorType.

    Unwraps executor errors to their underlying cause first.

    Args:
        error: Any exception raised while running a turn

    Returns:
        The best matching ErrorType (UNKNOWN_ERROR if nothing matches)
    """
    if isinstance(error, NoCredentialsError):
        return ErrorType.NO_CREDENTIALS
    if isinstance(error, StreamInterruptedError):
        return ErrorType.STREAM_INTERRUPTED
    if isinstance(error, AllCredentialsFailedError) and error.last_error is not None:
        return classify_exception(error.last_error)

    status = _status_code(error)
    message = str(error)
    lowered = message.lower()

    if status == 403 or "API_KEY_INVALID" in message or "permission denied" in lowered:
        return ErrorType.API_KEY_PERMISSION_DENIED
    if status == 400 and "api key" in lowered.replace("-", " "):
        return ErrorType.API_KEY_INVALID
    if "QUOTA_EXCEEDED" in message or "quota" in lowered:
        return ErrorType.API_KEY_QUOTA_EXCEEDED
    if status == 429 or "rate limit" in lowered:
        return ErrorType.RATE_LIMIT_EXCEEDED
    if isinstance(error, TimeoutError) or status in (503, 504) or "timeout" in lowered:
        return ErrorType.NETWORK_TIMEOUT
    if isinstance(error, ConnectionError) or "network" in lowered or "connect" in lowered:
        return ErrorType.NETWORK_ERROR
    if status is not None and status >= 500:
        return ErrorType.SERVER_ERROR
    if status == 400:
        return ErrorType.BAD_REQUEST
    return ErrorType.UNKNOWN_ERROR


# =============================================================================
# USER-FACING OUTCOME MESSAGES
# =============================================================================

OUTCOME_MESSAGES: Dict[TurnOutcome, Dict[str, str]] = {
    TurnOutcome.NO_CREDENTIALS: {
        "en": "No API key configured. Please add a Gemini API key in Settings.",
        "zh": "未提供 API 密钥。请在设置中添加 Gemini API 密钥。",
    },
    TurnOutcome.SAFETY: {
        "en": "Google cut it for safety",
        "zh": "Google 因安全原因中断了回答",
    },
    TurnOutcome.MAX_TOKENS: {
        "en": "Google cut it for max length",
        "zh": "Google 因长度限制中断了回答",
    },
    TurnOutcome.SILENT_EMPTY: {
        "en": "Google cut it for unknown reason",
        "zh": "Google 因未知原因中断了回答",
    },
    TurnOutcome.TIMEOUT: {
        "en": "Request timed out. The model took too long or the connection dropped.",
        "zh": "请求超时，模型响应时间过长或连接中断。",
    },
    TurnOutcome.TRANSPORT_ERROR: {
        "en": "Transport error. Please check your connection or API keys and try again.",
        "zh": "网络请求失败。请检查网络连接或 API 密钥后重试。",
    },
}


def outcome_message(outcome: TurnOutcome, language: str = "en") -> Optional[str]:
    """
    Short, non-technical string for an errored outcome.

    Returns None for outcomes that are not errors (success, cancelled).
    """
    templates = OUTCOME_MESSAGES.get(outcome)
    if templates is None:
        return None
    return templates.get(language, templates["en"])
